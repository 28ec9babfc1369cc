"""Error taxonomy for matrix runs.

Only EnvironmentCheckError and PlanningError abort a run.  Cell-level errors
are caught inside the executor and turned into ResultRecords.
"""


class MatrixError(Exception):
    """Base class for all compatmatrix errors."""


class EnvironmentCheckError(MatrixError):
    """Required tool missing, output directory unwritable, not enough disk."""

    def __init__(self, failures: list[str]):
        self.failures = list(failures)
        super().__init__("; ".join(self.failures))


class PlanningError(MatrixError):
    """The matrix cannot be planned (empty dimension, empty after filtering)."""


class CellExecutionError(MatrixError):
    """A suite command failed for one cell."""

    def __init__(self, cell_id: str, message: str, exit_code: int | None = None):
        self.cell_id = cell_id
        self.exit_code = exit_code
        super().__init__(f"{cell_id}: {message}")


class CellTimeoutError(CellExecutionError):
    """A suite command exceeded its per-cell timeout."""

    def __init__(self, cell_id: str, timeout_sec: float):
        self.timeout_sec = timeout_sec
        super().__init__(cell_id, f"timed out after {timeout_sec:.0f}s")


class AggregationError(MatrixError):
    """Baseline unreadable or corrupt; trend analysis becomes unavailable."""


class InvalidTransitionError(MatrixError):
    """A cell state change that would regress or skip a required state."""


class DuplicateResultError(MatrixError):
    """A second ResultRecord was written for the same cell."""
