from enum import Enum


class CellState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (CellState.PENDING, CellState.RUNNING)

    @property
    def is_failure(self) -> bool:
        return self in (CellState.FAILED, CellState.TIMED_OUT)


class SuiteKind(str, Enum):
    UNIT = "unit"
    ACCEPTANCE = "acceptance"
    FUNCTION = "function"
    INTEGRATION = "integration"
    PERFORMANCE = "performance"


class Dimension(str, Enum):
    TOOL_VERSION = "tool_version"
    OS = "os"
    ARCH = "arch"
    SUITE = "suite"


class ReportFormat(str, Enum):
    JSON = "json"
    MARKDOWN = "markdown"
    JUNIT = "junit"
    GITHUB = "github"


class Verdict(str, Enum):
    PASSED = "passed"
    THRESHOLD_NOT_MET = "threshold_not_met"
