"""Matrix Planner: expand dimension sets into an ordered ExecutionPlan.

Iteration order is versions outer, then os, then arch, then suite.  Cells
are filtered out by applicability predicates but never reordered.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from itertools import product
from typing import Callable, Iterable

from packaging.version import InvalidVersion, Version

from compatmatrix.config import RunConfig
from compatmatrix.errors import PlanningError
from compatmatrix.models import (
    Baseline,
    CellState,
    Dimension,
    ExecutionPlan,
    SuiteKind,
    TestMatrixCell,
)

logger = logging.getLogger(__name__)

LATEST = "latest"

_V18 = [f"1.8.{i}" for i in range(6)]
_V19 = [f"1.9.{i}" for i in range(9)]


@dataclass(frozen=True)
class Preset:
    name: str
    versions: tuple[str, ...]
    oses: tuple[str, ...]
    archs: tuple[str, ...]
    suites: tuple[SuiteKind, ...]


PRESETS: dict[str, Preset] = {
    "minimal": Preset(
        name="minimal",
        versions=("1.8.0", "1.9.8", LATEST),
        oses=("linux",),
        archs=("amd64",),
        suites=(SuiteKind.UNIT, SuiteKind.ACCEPTANCE),
    ),
    "standard": Preset(
        name="standard",
        versions=(*_V18, *_V19, "1.10.0", "1.10.1", LATEST),
        oses=("linux", "darwin", "windows"),
        archs=("amd64", "arm64"),
        suites=(SuiteKind.UNIT, SuiteKind.ACCEPTANCE, SuiteKind.FUNCTION),
    ),
    "extended": Preset(
        name="extended",
        versions=(*_V18, *_V19, "1.10.0", "1.10.1", "1.10.2", "1.10.3", LATEST),
        oses=("linux", "darwin", "windows"),
        archs=("amd64", "arm64", "386"),
        suites=tuple(SuiteKind),
    ),
}

# os -> supported architectures; an os not listed supports everything
PLATFORM_ARCHS: dict[str, frozenset[str]] = {
    "darwin": frozenset({"amd64", "arm64"}),
    "windows": frozenset({"amd64", "386"}),
}

# suite -> lowest tool version it applies to
SUITE_MIN_VERSIONS: dict[SuiteKind, str] = {
    SuiteKind.FUNCTION: "1.8.0",
}

Predicate = Callable[[str, str, str, SuiteKind], bool]

# Dimension values become path components of work dirs, logs and raw records
_SAFE_VALUE = re.compile(r"^[A-Za-z0-9._-]+$")


# ── Version handling ────────────────────────────────────────────


def version_key(version: str) -> tuple:
    """Sort key for release versions; ``latest`` sorts above all."""
    if version == LATEST:
        return (1, Version("0"))
    try:
        return (0, Version(version))
    except InvalidVersion:
        raise PlanningError(f"invalid tool version '{version}'") from None


def compare_versions(a: str, b: str) -> int:
    ka, kb = version_key(a), version_key(b)
    if ka == kb:
        return 0
    return -1 if ka < kb else 1


def is_valid_version(version: str) -> bool:
    if version == LATEST:
        return True
    if not _SAFE_VALUE.match(version):
        return False
    try:
        return len(Version(version).release) >= 2
    except InvalidVersion:
        return False


# ── Applicability predicates ────────────────────────────────────


def platform_supports_arch(version: str, os_name: str, arch: str, suite: SuiteKind) -> bool:
    supported = PLATFORM_ARCHS.get(os_name)
    return supported is None or arch in supported


def suite_min_version(version: str, os_name: str, arch: str, suite: SuiteKind) -> bool:
    minimum = SUITE_MIN_VERSIONS.get(suite)
    return minimum is None or compare_versions(version, minimum) >= 0


DEFAULT_PREDICATES: tuple[Predicate, ...] = (platform_supports_arch, suite_min_version)


# ── Planning ────────────────────────────────────────────────────


def _dedup(values: Iterable) -> list:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


def _given(values, default):
    """Explicit dimension set if one was given (even an empty one), else *default*."""
    return default if values is None else [v for v in values if v.strip()]


def parse_suites(names: Iterable[str]) -> list[SuiteKind]:
    suites = []
    for name in names:
        try:
            suites.append(SuiteKind(name.strip().lower()))
        except ValueError:
            valid = ", ".join(s.value for s in SuiteKind)
            raise PlanningError(f"unknown suite '{name}' (valid: {valid})") from None
    return suites


def validate_names(dimension: str, values: Iterable[str]) -> None:
    for v in values:
        if not _SAFE_VALUE.match(v):
            raise PlanningError(
                f"invalid {dimension} '{v}' (letters, digits, '.', '_' and '-' only)"
            )


def validate_versions(versions: Iterable[str], minimum: str) -> None:
    """Reject malformed versions and versions below *minimum*."""
    for v in versions:
        if not is_valid_version(v):
            raise PlanningError(f"invalid tool version '{v}'")
        if compare_versions(v, minimum) < 0:
            raise PlanningError(f"tool version {v} is below the minimum supported {minimum}")


def estimate_cost(cell: TestMatrixCell, baseline: Baseline | None, default: float) -> float:
    """Per-cell baseline duration, else mean of per-dimension durations."""
    if baseline is None:
        return default
    if cell.cell_id in baseline.cell_durations:
        return baseline.cell_durations[cell.cell_id]
    known = []
    for dim in Dimension:
        value = baseline.dimension_durations.get(dim, {}).get(cell.value_of(dim))
        if value is not None:
            known.append(value)
    if known:
        return sum(known) / len(known)
    return default


class MatrixPlanner:
    """Builds an ExecutionPlan from a RunConfig."""

    def __init__(
        self,
        config: RunConfig,
        predicates: Iterable[Predicate] = DEFAULT_PREDICATES,
        baseline: Baseline | None = None,
    ):
        self.config = config
        self.predicates = tuple(predicates)
        self.baseline = baseline

    def resolve_dimensions(self) -> tuple[str, list[str], list[str], list[str], list[SuiteKind]]:
        cfg = self.config
        preset = PRESETS.get(cfg.preset)
        if preset is None:
            raise PlanningError(
                f"unknown preset '{cfg.preset}' (valid: {', '.join(PRESETS)})"
            )
        versions = _dedup(v.strip() for v in _given(cfg.versions, preset.versions))
        oses = _dedup(o.strip().lower() for o in _given(cfg.oses, preset.oses))
        archs = _dedup(a.strip().lower() for a in _given(cfg.archs, preset.archs))
        if cfg.suites is not None:
            suites = _dedup(parse_suites(cfg.suites))
        else:
            suites = list(preset.suites)
        return preset.name, versions, oses, archs, suites

    def applicable(self, version: str, os_name: str, arch: str, suite: SuiteKind) -> bool:
        return all(p(version, os_name, arch, suite) for p in self.predicates)

    def plan(self) -> ExecutionPlan:
        preset, versions, oses, archs, suites = self.resolve_dimensions()
        for name, values in (
            ("versions", versions), ("os", oses), ("arch", archs), ("suites", suites),
        ):
            if not values:
                raise PlanningError(f"dimension set '{name}' is empty")
        validate_versions(versions, self.config.min_tool_version)
        validate_names("os", oses)
        validate_names("arch", archs)

        cells = []
        dropped = 0
        for version, os_name, arch, suite in product(versions, oses, archs, suites):
            if not self.applicable(version, os_name, arch, suite):
                dropped += 1
                continue
            cell = TestMatrixCell(
                tool_version=version, os=os_name, arch=arch, suite=suite,
                state=CellState.PENDING,
            )
            cell.estimated_cost_sec = estimate_cost(
                cell, self.baseline, self.config.default_cell_cost_sec,
            )
            cells.append(cell)

        if not cells:
            raise PlanningError("matrix is empty after applying applicability filters")

        logger.info(
            "Planned %d cells (preset=%s, %d versions x %d os x %d arch x %d suites, "
            "%d filtered)",
            len(cells), preset, len(versions), len(oses), len(archs), len(suites), dropped,
        )
        return ExecutionPlan(
            preset=preset,
            versions=versions,
            oses=oses,
            archs=archs,
            suites=suites,
            cells=cells,
        )
