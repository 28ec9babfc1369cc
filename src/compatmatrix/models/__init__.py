from .cell import ExecutionPlan, TestMatrixCell
from .enums import CellState, Dimension, ReportFormat, SuiteKind, Verdict
from .report import (
    AggregatedReport,
    Baseline,
    CorrelationReport,
    DimensionBreakdown,
    DurationStats,
    RunSummary,
    SuspectValue,
    ThresholdVerdict,
    TrendReport,
)
from .resource import ResourceSnapshot
from .result import ResultRecord

__all__ = [
    "AggregatedReport",
    "Baseline",
    "CellState",
    "CorrelationReport",
    "Dimension",
    "DimensionBreakdown",
    "DurationStats",
    "ExecutionPlan",
    "ReportFormat",
    "ResourceSnapshot",
    "ResultRecord",
    "RunSummary",
    "SuiteKind",
    "SuspectValue",
    "TestMatrixCell",
    "ThresholdVerdict",
    "TrendReport",
    "Verdict",
]
