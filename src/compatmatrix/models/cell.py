import re
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

from compatmatrix.errors import InvalidTransitionError

from .enums import CellState, Dimension, SuiteKind
from .resource import ResourceSnapshot

_ALLOWED_TRANSITIONS: dict[CellState, frozenset[CellState]] = {
    CellState.PENDING: frozenset({CellState.RUNNING, CellState.CANCELLED, CellState.SKIPPED}),
    CellState.RUNNING: frozenset({
        CellState.PASSED,
        CellState.FAILED,
        CellState.TIMED_OUT,
        CellState.CANCELLED,
        CellState.SKIPPED,
    }),
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def cell_slug(key: tuple[str, ...]) -> str:
    """Filesystem-safe name used for work dirs, logs and raw records."""
    return "_".join(_UNSAFE_CHARS.sub("-", part) for part in key)


class TestMatrixCell(BaseModel):
    """One (tool_version, os, arch, suite) combination and its run state."""

    __test__ = False

    tool_version: str
    os: str
    arch: str
    suite: SuiteKind
    state: CellState = CellState.PENDING
    attempts: int = 0
    estimated_cost_sec: float = 0.0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    resource_snapshot: Optional[ResourceSnapshot] = None
    error: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.tool_version, self.os, self.arch, self.suite.value)

    @property
    def cell_id(self) -> str:
        return "/".join(self.key)

    @property
    def slug(self) -> str:
        return cell_slug(self.key)

    def value_of(self, dimension: Dimension) -> str:
        if dimension is Dimension.SUITE:
            return self.suite.value
        return getattr(self, dimension.value)

    def transition(self, new_state: CellState, error: str | None = None) -> None:
        """Move to *new_state*.  States only move forward."""
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransitionError(
                f"{self.cell_id}: {self.state.value} -> {new_state.value} not allowed"
            )
        now = datetime.now(timezone.utc)
        if new_state is CellState.RUNNING:
            self.started_at = now
        else:
            self.finished_at = now
        if error is not None:
            self.error = error
        self.state = new_state


class ExecutionPlan(BaseModel):
    """Ordered Pending cells produced by the planner."""

    preset: str
    versions: list[str]
    oses: list[str]
    archs: list[str]
    suites: list[SuiteKind]
    cells: list[TestMatrixCell]

    def __len__(self) -> int:
        return len(self.cells)

    @property
    def total_estimated_cost_sec(self) -> float:
        return sum(c.estimated_cost_sec for c in self.cells)

    def by_cost(self) -> list[TestMatrixCell]:
        """Cells ordered longest-first; ties keep plan order."""
        return sorted(self.cells, key=lambda c: -c.estimated_cost_sec)
