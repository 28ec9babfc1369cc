from datetime import datetime
from typing import Optional

from pydantic import BaseModel, model_validator

from .cell import TestMatrixCell, cell_slug
from .enums import CellState, Dimension, SuiteKind
from .resource import ResourceSnapshot


class ResultRecord(BaseModel):
    """Terminal outcome of one cell.  Written once, never modified."""

    model_config = {"frozen": True}

    cell_id: str
    tool_version: str
    os: str
    arch: str
    suite: SuiteKind
    state: CellState
    duration_sec: float = 0.0
    attempts: int = 0
    exit_code: Optional[int] = None
    log_path: Optional[str] = None
    output_tail: str = ""
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    resource_snapshot: Optional[ResourceSnapshot] = None

    @model_validator(mode="after")
    def _terminal_only(self):
        if not self.state.is_terminal:
            raise ValueError(f"result for {self.cell_id} has non-terminal state {self.state.value}")
        return self

    @classmethod
    def from_cell(cls, cell: TestMatrixCell, **kwargs) -> "ResultRecord":
        """Snapshot a cell that has reached a terminal state."""
        duration = 0.0
        if cell.started_at and cell.finished_at:
            duration = (cell.finished_at - cell.started_at).total_seconds()
        fields = dict(
            cell_id=cell.cell_id,
            tool_version=cell.tool_version,
            os=cell.os,
            arch=cell.arch,
            suite=cell.suite,
            state=cell.state,
            duration_sec=duration,
            attempts=cell.attempts,
            error=cell.error,
            started_at=cell.started_at,
            finished_at=cell.finished_at,
            resource_snapshot=cell.resource_snapshot,
        )
        fields.update(kwargs)
        return cls(**fields)

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.tool_version, self.os, self.arch, self.suite.value)

    @property
    def slug(self) -> str:
        return cell_slug(self.key)

    def value_of(self, dimension: Dimension) -> str:
        if dimension is Dimension.SUITE:
            return self.suite.value
        return getattr(self, dimension.value)
