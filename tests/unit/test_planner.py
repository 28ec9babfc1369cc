import pytest

from compatmatrix.core.planner import (
    LATEST,
    PRESETS,
    MatrixPlanner,
    compare_versions,
    estimate_cost,
    is_valid_version,
    platform_supports_arch,
    suite_min_version,
    version_key,
)
from compatmatrix.errors import PlanningError
from compatmatrix.models import Baseline, CellState, Dimension, SuiteKind

from .conftest import make_cell, make_config


def _plan(tmp_path, predicates=(), baseline=None, **overrides):
    config = make_config(tmp_path, **overrides)
    return MatrixPlanner(config, predicates=predicates, baseline=baseline).plan()


class TestVersions:
    def test_numeric_ordering(self):
        assert compare_versions("1.10.0", "1.9.8") == 1
        assert compare_versions("1.8.0", "1.8.0") == 0
        assert compare_versions("1.8.5", "1.9.0") == -1

    def test_prerelease_sorts_before_release(self):
        assert compare_versions("1.10.0rc1", "1.10.0") == -1
        assert compare_versions("v1.9.0", "1.9.0") == 0

    def test_invalid_version_key(self):
        with pytest.raises(PlanningError, match="invalid tool version"):
            version_key("one.two")

    def test_is_valid_version(self):
        assert is_valid_version("1.9.8")
        assert is_valid_version(LATEST)
        assert not is_valid_version("1")
        assert not is_valid_version("nightly")

    def test_latest_sorts_last(self):
        versions = ["latest", "1.10.3", "1.8.0"]
        assert sorted(versions, key=version_key) == ["1.8.0", "1.10.3", "latest"]


class TestExpansion:
    def test_full_cartesian_product(self, tmp_path):
        plan = _plan(
            tmp_path,
            versions=("1.8.0", "1.9.0", "latest"),
            oses=("linux", "darwin"),
            archs=("amd64", "arm64"),
            suites=("unit", "acceptance"),
        )
        assert len(plan) == 3 * 2 * 2 * 2
        assert len({c.key for c in plan.cells}) == len(plan)
        assert all(c.state is CellState.PENDING for c in plan.cells)

    def test_stable_iteration_order(self, tmp_path):
        plan = _plan(
            tmp_path,
            versions=("1.9.0", "1.8.0"),
            oses=("linux", "windows"),
            archs=("amd64",),
            suites=("unit", "function"),
        )
        assert [c.cell_id for c in plan.cells] == [
            "1.9.0/linux/amd64/unit",
            "1.9.0/linux/amd64/function",
            "1.9.0/windows/amd64/unit",
            "1.9.0/windows/amd64/function",
            "1.8.0/linux/amd64/unit",
            "1.8.0/linux/amd64/function",
            "1.8.0/windows/amd64/unit",
            "1.8.0/windows/amd64/function",
        ]

    def test_duplicates_dropped_keeping_first(self, tmp_path):
        plan = _plan(
            tmp_path,
            versions=("1.9.0", "1.8.0", "1.9.0"),
            oses=("linux", "Linux"),
            archs=("amd64",),
            suites=("unit", "unit"),
        )
        assert plan.versions == ["1.9.0", "1.8.0"]
        assert plan.oses == ["linux"]
        assert len(plan) == 2

    def test_preset_defaults(self, tmp_path):
        plan = _plan(tmp_path, preset="minimal")
        assert plan.preset == "minimal"
        assert plan.versions == ["1.8.0", "1.9.8", "latest"]
        assert len(plan) == 3 * 1 * 1 * 2

    def test_explicit_sets_override_preset(self, tmp_path):
        plan = _plan(tmp_path, preset="extended", versions=("1.9.8",), suites=("unit",))
        assert plan.versions == ["1.9.8"]
        assert plan.oses == list(PRESETS["extended"].oses)

    def test_extended_preset_covers_all_suites(self):
        assert set(PRESETS["extended"].suites) == set(SuiteKind)
        assert "1.10.3" in PRESETS["extended"].versions
        assert "1.10.3" not in PRESETS["standard"].versions


class TestFilters:
    def test_platform_arch_support(self):
        assert platform_supports_arch("1.9.0", "darwin", "arm64", SuiteKind.UNIT)
        assert not platform_supports_arch("1.9.0", "darwin", "386", SuiteKind.UNIT)
        assert not platform_supports_arch("1.9.0", "windows", "arm64", SuiteKind.UNIT)
        assert platform_supports_arch("1.9.0", "linux", "386", SuiteKind.UNIT)

    def test_suite_min_version(self):
        assert suite_min_version("1.8.0", "linux", "amd64", SuiteKind.FUNCTION)
        assert not suite_min_version("1.7.5", "linux", "amd64", SuiteKind.FUNCTION)
        assert suite_min_version("1.0.0", "linux", "amd64", SuiteKind.UNIT)

    def test_default_predicates_filter_without_reordering(self, tmp_path):
        config = make_config(
            tmp_path,
            versions=("1.9.0",),
            oses=("linux", "darwin", "windows"),
            archs=("amd64", "arm64", "386"),
            suites=("unit",),
        )
        plan = MatrixPlanner(config).plan()
        assert [(c.os, c.arch) for c in plan.cells] == [
            ("linux", "amd64"), ("linux", "arm64"), ("linux", "386"),
            ("darwin", "amd64"), ("darwin", "arm64"),
            ("windows", "amd64"), ("windows", "386"),
        ]


class TestErrors:
    def test_unknown_preset(self, tmp_path):
        with pytest.raises(PlanningError, match="unknown preset"):
            _plan(tmp_path, preset="huge")

    def test_unknown_suite(self, tmp_path):
        with pytest.raises(PlanningError, match="unknown suite"):
            _plan(tmp_path, suites=("smoke",))

    def test_version_below_minimum(self, tmp_path):
        with pytest.raises(PlanningError, match="below the minimum"):
            _plan(tmp_path, versions=("1.7.9",))

    def test_malformed_version(self, tmp_path):
        with pytest.raises(PlanningError, match="invalid tool version"):
            _plan(tmp_path, versions=("one.two",))

    def test_empty_after_filtering(self, tmp_path):
        with pytest.raises(PlanningError, match="empty"):
            _plan(
                tmp_path,
                predicates=(lambda *a: False,),
                versions=("1.9.0",), oses=("linux",), archs=("amd64",), suites=("unit",),
            )

    @pytest.mark.parametrize("dimension,name", [
        ("versions", "versions"), ("oses", "os"), ("archs", "arch"), ("suites", "suites"),
    ])
    def test_explicit_empty_dimension(self, tmp_path, dimension, name):
        with pytest.raises(PlanningError, match=f"'{name}' is empty"):
            MatrixPlanner(make_config(tmp_path, **{dimension: ()})).plan()

    def test_blank_values_do_not_fall_back_to_preset(self, tmp_path):
        with pytest.raises(PlanningError, match="'os' is empty"):
            MatrixPlanner(make_config(tmp_path, oses=(" ",))).plan()

    @pytest.mark.parametrize("overrides", [
        {"oses": ("linux/x",)},
        {"archs": ("amd 64",)},
        {"versions": ("1.9.0+local",)},
    ])
    def test_values_must_be_path_safe(self, tmp_path, overrides):
        with pytest.raises(PlanningError, match="invalid"):
            MatrixPlanner(make_config(tmp_path, **overrides)).plan()


class TestCostEstimate:
    def _baseline(self):
        return Baseline(
            created_at="2026-01-01T00:00:00Z",
            pass_rate=1.0,
            dimension_durations={
                Dimension.TOOL_VERSION: {"1.9.0": 30.0},
                Dimension.SUITE: {"unit": 10.0},
            },
            cell_durations={"1.9.0/linux/amd64/unit": 12.5},
        )

    def test_default_without_baseline(self):
        assert estimate_cost(make_cell(), None, 60.0) == 60.0

    def test_cell_duration_preferred(self):
        cell = make_cell("1.9.0")
        assert estimate_cost(cell, self._baseline(), 60.0) == 12.5

    def test_dimension_mean_fallback(self):
        cell = make_cell("1.9.0", os="darwin")
        assert estimate_cost(cell, self._baseline(), 60.0) == pytest.approx(20.0)

    def test_unknown_values_use_default(self):
        cell = make_cell("1.8.0", suite=SuiteKind.PERFORMANCE)
        assert estimate_cost(cell, self._baseline(), 60.0) == 60.0

    def test_plan_annotates_costs(self, tmp_path):
        plan = _plan(
            tmp_path,
            baseline=self._baseline(),
            versions=("1.9.0", "1.8.0"), oses=("linux",), archs=("amd64",), suites=("unit",),
            default_cell_cost_sec=45.0,
        )
        assert [c.estimated_cost_sec for c in plan.cells] == [12.5, 10.0]
