"""Result Aggregator: collect ResultRecords and build the AggregatedReport.

Everything here is a pure transform over the collected records.  Records
are sorted by cell key before any computation so the report does not
depend on completion order.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Iterable, Optional

from compatmatrix.config import RunConfig
from compatmatrix.errors import DuplicateResultError
from compatmatrix.models import (
    AggregatedReport,
    Baseline,
    CellState,
    CorrelationReport,
    Dimension,
    DimensionBreakdown,
    DurationStats,
    ResultRecord,
    RunSummary,
    ThresholdVerdict,
    TrendReport,
    Verdict,
)

logger = logging.getLogger(__name__)

_EXECUTED = (CellState.PASSED, CellState.FAILED, CellState.TIMED_OUT)


class ResultCollector:
    """Write-once store of ResultRecords keyed by cell id."""

    def __init__(self):
        self._records: dict[str, ResultRecord] = {}

    def add(self, record: ResultRecord) -> None:
        if record.cell_id in self._records:
            raise DuplicateResultError(f"result for {record.cell_id} already recorded")
        self._records[record.cell_id] = record

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, cell_id: str) -> bool:
        return cell_id in self._records

    def get(self, cell_id: str) -> ResultRecord | None:
        return self._records.get(cell_id)

    @property
    def records(self) -> list[ResultRecord]:
        return sorted(self._records.values(), key=lambda r: r.key)


# ── Statistics ──────────────────────────────────────────────────


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def percentile(values: list[float], pct: float) -> float:
    """Linear-interpolated percentile (pct in 0..100)."""
    if not values:
        return 0.0
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    rank = (len(ordered) - 1) * pct / 100.0
    lo = math.floor(rank)
    hi = math.ceil(rank)
    if lo == hi:
        return ordered[lo]
    return ordered[lo] + (ordered[hi] - ordered[lo]) * (rank - lo)


def duration_stats(records: Iterable[ResultRecord]) -> DurationStats:
    durations = [r.duration_sec for r in records if r.state in _EXECUTED]
    if not durations:
        return DurationStats()
    return DurationStats(
        count=len(durations),
        mean=_mean(durations),
        p50=percentile(durations, 50),
        p90=percentile(durations, 90),
        p99=percentile(durations, 99),
        total=sum(durations),
    )


def _count(records: list[ResultRecord], state: CellState) -> int:
    return sum(1 for r in records if r.state is state)


def summarize(records: Iterable[ResultRecord]) -> RunSummary:
    records = list(records)
    return RunSummary(
        total=len(records),
        passed=_count(records, CellState.PASSED),
        failed=_count(records, CellState.FAILED),
        timed_out=_count(records, CellState.TIMED_OUT),
        skipped=_count(records, CellState.SKIPPED),
        cancelled=_count(records, CellState.CANCELLED),
    )


def breakdown(records: Iterable[ResultRecord]) -> list[DimensionBreakdown]:
    """Per-dimension, per-value counts in first-seen (key-sorted) order."""
    records = sorted(records, key=lambda r: r.key)
    rows = []
    for dim in Dimension:
        groups: dict[str, list[ResultRecord]] = {}
        for rec in records:
            groups.setdefault(rec.value_of(dim), []).append(rec)
        for value, group in groups.items():
            summary = summarize(group)
            rows.append(DimensionBreakdown(
                dimension=dim,
                value=value,
                total=summary.total,
                passed=summary.passed,
                failed=summary.failed,
                timed_out=summary.timed_out,
                skipped=summary.skipped,
                cancelled=summary.cancelled,
                mean_duration_sec=_mean(
                    [r.duration_sec for r in group if r.state in _EXECUTED]
                ),
            ))
    return rows


def evaluate_threshold(pass_rate: float, threshold_pct: float) -> ThresholdVerdict:
    pass_rate_pct = pass_rate * 100.0
    verdict = Verdict.PASSED if pass_rate_pct >= threshold_pct else Verdict.THRESHOLD_NOT_MET
    return ThresholdVerdict(
        threshold_pct=threshold_pct, pass_rate_pct=pass_rate_pct, verdict=verdict,
    )


def compare_to_baseline(
    summary: RunSummary,
    rows: list[DimensionBreakdown],
    baseline: Baseline | None,
    unavailable_reason: str = "no baseline",
) -> TrendReport:
    if baseline is None:
        return TrendReport.unavailable(unavailable_reason)
    deltas: dict[Dimension, dict[str, float]] = {}
    for row in rows:
        base = baseline.dimension_durations.get(row.dimension, {}).get(row.value)
        if base is None or row.mean_duration_sec == 0.0:
            continue
        deltas.setdefault(row.dimension, {})[row.value] = row.mean_duration_sec - base
    return TrendReport(
        available=True,
        baseline_created_at=baseline.created_at,
        baseline_pass_rate=baseline.pass_rate,
        pass_rate_delta_pp=(summary.pass_rate - baseline.pass_rate) * 100.0,
        duration_deltas=deltas,
    )


class ResultAggregator:
    """Turns the collected records into the frozen AggregatedReport."""

    def __init__(self, config: RunConfig):
        self.config = config

    def aggregate(
        self,
        records: Iterable[ResultRecord],
        preset: str,
        partial: bool = False,
        correlation: Optional[CorrelationReport] = None,
        baseline: Optional[Baseline] = None,
        baseline_error: str | None = None,
        resource_usage: dict[str, float] | None = None,
    ) -> AggregatedReport:
        records = sorted(records, key=lambda r: r.key)
        summary = summarize(records)
        rows = breakdown(records)
        if self.config.trend_analysis:
            trend = compare_to_baseline(
                summary, rows, baseline, unavailable_reason=baseline_error or "no baseline",
            )
        else:
            trend = TrendReport.unavailable("trend analysis disabled")
        threshold = evaluate_threshold(summary.pass_rate, self.config.threshold_pct)

        logger.info(
            "Aggregated %d results: %d passed, %d failed, %d timed out, %d skipped, "
            "%d cancelled (pass rate %.1f%%, threshold %.1f%%)",
            summary.total, summary.passed, summary.failed, summary.timed_out,
            summary.skipped, summary.cancelled, threshold.pass_rate_pct,
            threshold.threshold_pct,
        )
        return AggregatedReport(
            generated_at=datetime.now(timezone.utc),
            preset=preset,
            partial=partial,
            summary=summary,
            durations=duration_stats(records),
            breakdown=rows,
            correlation=correlation,
            trend=trend,
            threshold=threshold,
            include_logs=self.config.include_logs,
            resource_usage=resource_usage or {},
            records=records,
        )
