import pytest
from pydantic import ValidationError

from compatmatrix.errors import InvalidTransitionError
from compatmatrix.models import (
    CellState,
    Dimension,
    DimensionBreakdown,
    ResultRecord,
    RunSummary,
    SuiteKind,
)

from .conftest import make_cell, make_plan, make_record, snapshot


class TestCell:
    def test_identity(self):
        cell = make_cell("1.10.0", "darwin", "arm64", SuiteKind.ACCEPTANCE)
        assert cell.key == ("1.10.0", "darwin", "arm64", "acceptance")
        assert cell.cell_id == "1.10.0/darwin/arm64/acceptance"
        assert cell.value_of(Dimension.OS) == "darwin"
        assert cell.value_of(Dimension.SUITE) == "acceptance"

    def test_slug_is_filesystem_safe(self):
        cell = make_cell("1.10.0+beta/1", "linux", "amd64")
        assert "/" not in cell.slug
        assert cell.slug == "1.10.0-beta-1_linux_amd64_unit"

    def test_forward_transitions(self):
        cell = make_cell()
        cell.transition(CellState.RUNNING)
        assert cell.started_at is not None
        cell.transition(CellState.FAILED, error="exit code 1")
        assert cell.state is CellState.FAILED
        assert cell.finished_at >= cell.started_at
        assert cell.error == "exit code 1"

    def test_pending_may_be_cancelled_or_skipped(self):
        a, b = make_cell("1.8.0"), make_cell("1.9.0")
        a.transition(CellState.CANCELLED)
        b.transition(CellState.SKIPPED)
        assert a.started_at is None
        assert b.state.is_terminal

    @pytest.mark.parametrize("target", [CellState.PASSED, CellState.PENDING])
    def test_pending_cannot_jump(self, target):
        with pytest.raises(InvalidTransitionError):
            make_cell().transition(target)

    def test_terminal_never_regresses(self):
        cell = make_cell()
        cell.transition(CellState.RUNNING)
        cell.transition(CellState.PASSED)
        for target in CellState:
            with pytest.raises(InvalidTransitionError):
                cell.transition(target)


class TestPlan:
    def test_by_cost_is_stable(self):
        cells = [
            make_cell("1.8.0", cost=5), make_cell("1.9.0", cost=10),
            make_cell("1.10.0", cost=5), make_cell("latest", cost=1),
        ]
        plan = make_plan(cells)
        assert [c.tool_version for c in plan.by_cost()] == ["1.9.0", "1.8.0", "1.10.0", "latest"]
        assert plan.total_estimated_cost_sec == 21
        assert len(plan) == 4


class TestResultRecord:
    def test_from_cell(self):
        cell = make_cell()
        cell.resource_snapshot = snapshot(cpu=42)
        cell.transition(CellState.RUNNING)
        cell.attempts = 2
        cell.transition(CellState.PASSED)
        rec = ResultRecord.from_cell(cell, exit_code=0)
        assert rec.cell_id == cell.cell_id
        assert rec.attempts == 2
        assert rec.exit_code == 0
        assert rec.duration_sec >= 0
        assert rec.resource_snapshot.cpu_percent == 42
        assert rec.slug == cell.slug

    def test_non_terminal_rejected(self):
        with pytest.raises(ValidationError, match="non-terminal"):
            make_record(state=CellState.RUNNING)

    def test_frozen(self):
        rec = make_record()
        with pytest.raises(ValidationError):
            rec.state = CellState.FAILED

    def test_json_round_trip(self):
        rec = make_record(state=CellState.TIMED_OUT, error="timed out after 5s")
        again = ResultRecord.model_validate_json(rec.model_dump_json())
        assert again == rec


class TestPassRate:
    def test_skipped_excluded(self):
        s = RunSummary(total=10, passed=6, failed=2, skipped=2)
        assert s.pass_rate == pytest.approx(0.75)

    def test_zero_denominator(self):
        assert RunSummary(total=3, skipped=3).pass_rate == 0.0
        assert RunSummary().pass_rate == 0.0

    def test_breakdown_pass_rate(self):
        b = DimensionBreakdown(dimension=Dimension.OS, value="linux", total=4, passed=1, failed=3)
        assert b.pass_rate == pytest.approx(0.25)
