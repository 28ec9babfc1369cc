from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .enums import Dimension, Verdict
from .result import ResultRecord


class DurationStats(BaseModel):
    model_config = {"frozen": True}

    count: int = 0
    mean: float = 0.0
    p50: float = 0.0
    p90: float = 0.0
    p99: float = 0.0
    total: float = 0.0


class DimensionBreakdown(BaseModel):
    """Outcome counts for one value of one dimension."""

    model_config = {"frozen": True}

    dimension: Dimension
    value: str
    total: int = 0
    passed: int = 0
    failed: int = 0
    timed_out: int = 0
    skipped: int = 0
    cancelled: int = 0
    mean_duration_sec: float = 0.0

    @property
    def pass_rate(self) -> float:
        denom = self.total - self.skipped
        return self.passed / denom if denom > 0 else 0.0


class SuspectValue(BaseModel):
    model_config = {"frozen": True}

    dimension: Dimension
    value: str
    failed: int
    total: int
    ratio: float


class CorrelationReport(BaseModel):
    model_config = {"frozen": True}

    threshold: float
    ratios: dict[Dimension, dict[str, float]] = {}
    suspects: list[SuspectValue] = []
    classification: dict[str, str] = {}  # cell_id -> "systemic" | "isolated"

    def suspects_for(self, dimension: Dimension) -> list[SuspectValue]:
        return [s for s in self.suspects if s.dimension is dimension]

    @property
    def suspect_keys(self) -> set[tuple[Dimension, str]]:
        return {(s.dimension, s.value) for s in self.suspects}


class Baseline(BaseModel):
    """Aggregate persisted from a previous run."""

    created_at: datetime
    pass_rate: float
    total: int = 0
    dimension_durations: dict[Dimension, dict[str, float]] = {}
    cell_durations: dict[str, float] = {}


class TrendReport(BaseModel):
    model_config = {"frozen": True}

    available: bool = False
    reason: str = ""
    baseline_created_at: Optional[datetime] = None
    baseline_pass_rate: Optional[float] = None
    pass_rate_delta_pp: Optional[float] = None
    duration_deltas: dict[Dimension, dict[str, float]] = {}

    @classmethod
    def unavailable(cls, reason: str) -> "TrendReport":
        return cls(available=False, reason=reason)


class ThresholdVerdict(BaseModel):
    """Outcome of the pass-rate gate.  A verdict, not an exception."""

    model_config = {"frozen": True}

    threshold_pct: float
    pass_rate_pct: float
    verdict: Verdict

    @property
    def met(self) -> bool:
        return self.verdict is Verdict.PASSED


class RunSummary(BaseModel):
    model_config = {"frozen": True}

    total: int = 0
    passed: int = 0
    failed: int = 0
    timed_out: int = 0
    skipped: int = 0
    cancelled: int = 0

    @property
    def pass_rate(self) -> float:
        denom = self.total - self.skipped
        return self.passed / denom if denom > 0 else 0.0


class AggregatedReport(BaseModel):
    """Final report for one run.  Built once after the barrier."""

    model_config = {"frozen": True}

    generated_at: datetime
    preset: str
    partial: bool = False
    summary: RunSummary
    durations: DurationStats
    breakdown: list[DimensionBreakdown] = []
    correlation: Optional[CorrelationReport] = None
    trend: TrendReport
    threshold: ThresholdVerdict
    include_logs: bool = False
    resource_usage: dict[str, float] = {}
    records: list[ResultRecord] = []

    def breakdown_for(self, dimension: Dimension) -> list[DimensionBreakdown]:
        return [b for b in self.breakdown if b.dimension is dimension]

    @property
    def failed_records(self) -> list[ResultRecord]:
        return [r for r in self.records if r.state.is_failure]
