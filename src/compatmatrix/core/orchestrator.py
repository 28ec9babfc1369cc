"""Orchestrator: the explicit task graph for one matrix run.

    baseline -> plan -> preflight -> scheduler (queue of records)
      -> barrier -> correlator + aggregator -> reporter
      -> baseline update -> notifier

Only PlanningError and EnvironmentCheckError abort a run early.  Every
other outcome is data in the AggregatedReport.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Optional, TextIO

from compatmatrix.config import RunConfig
from compatmatrix.errors import AggregationError, EnvironmentCheckError, PlanningError
from compatmatrix.models import (
    AggregatedReport,
    Baseline,
    CellState,
    ExecutionPlan,
    ReportFormat,
    ResultRecord,
)

from .aggregator import ResultAggregator, ResultCollector
from .baseline import build_baseline, load_baseline, save_baseline
from .correlator import correlate
from .environment import run_preflight
from .executor import CellExecutor
from .notifier import WebhookNotifier
from .planner import MatrixPlanner
from .reporter import print_plan, print_summary, write_reports
from .resource_monitor import ResourceMonitor
from .results_store import ResultStore
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    SUCCESS = 0
    FATAL = 1
    THRESHOLD_NOT_MET = 3
    CANCELLED = 130


@dataclass
class RunOutcome:
    exit_code: ExitCode
    plan: Optional[ExecutionPlan] = None
    report: Optional[AggregatedReport] = None
    artifacts: list[Path] = field(default_factory=list)
    error: Optional[str] = None


async def _consume(queue: asyncio.Queue, collector: ResultCollector, store: ResultStore) -> None:
    """Single writer for the collector and the raw-results directory."""
    while True:
        record = await queue.get()
        if record is None:
            return
        collector.add(record)
        store.save(record)


class Orchestrator:
    def __init__(
        self,
        config: RunConfig,
        executor: CellExecutor | None = None,
        monitor: ResourceMonitor | None = None,
        notifier: WebhookNotifier | None = None,
        out: TextIO = sys.stdout,
    ):
        self.config = config
        self.executor = executor
        self.monitor = monitor
        if self.monitor is None and config.monitoring_enabled:
            self.monitor = ResourceMonitor(config.monitor_interval_sec)
        self.notifier = notifier
        if self.notifier is None and config.webhook_url:
            self.notifier = WebhookNotifier(config.webhook_url)
        self.out = out
        self.scheduler: Scheduler | None = None
        self._cancel_requested = False

    def cancel(self) -> None:
        """Global cancellation; safe to call from a signal handler."""
        self._cancel_requested = True
        if self.scheduler is not None:
            self.scheduler.cancel()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable for %s", sig.name)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.warning("Received %s, cancelling", sig.name)
        self.cancel()

    # ── Stages ──────────────────────────────────────────────────

    def _load_baseline(self) -> tuple[Baseline | None, str | None]:
        path = self.config.resolved_baseline_path
        try:
            baseline = load_baseline(path)
        except AggregationError as exc:
            logger.warning("Baseline unavailable: %s", exc)
            return None, str(exc)
        if baseline is None:
            return None, f"no baseline at {path}"
        return baseline, None

    async def _execute(self, plan: ExecutionPlan) -> tuple[ResultCollector, bool]:
        cfg = self.config
        store = ResultStore(cfg.raw_dir)
        store.prepare()
        collector = ResultCollector()
        queue: asyncio.Queue = asyncio.Queue()
        self.scheduler = Scheduler(
            cfg, plan, queue, executor=self.executor, monitor=self.monitor,
        )
        if self._cancel_requested:
            self.scheduler.cancel()

        if self.monitor is not None:
            self.monitor.start()
        consumer = asyncio.create_task(_consume(queue, collector, store), name="result-consumer")
        try:
            await self.scheduler.run()
            await consumer
        finally:
            if not consumer.done():
                consumer.cancel()
            if self.monitor is not None:
                await self.monitor.stop()

        cancelled = self.scheduler.cancelled
        # Barrier: every planned cell must have exactly one terminal record
        for cell in plan.cells:
            if cell.cell_id in collector:
                continue
            logger.error("No result for %s (state %s)", cell.cell_id, cell.state.value)
            if not cell.state.is_terminal:
                cell.transition(CellState.CANCELLED, error=f"no result (was {cell.state.value})")
                record = ResultRecord.from_cell(cell)
                collector.add(record)
                store.save(record)
                cancelled = True
        return collector, cancelled

    def _report_formats(self) -> list[ReportFormat]:
        return [ReportFormat(f) for f in self.config.formats]

    async def run(self) -> RunOutcome:
        cfg = self.config
        baseline, baseline_error = self._load_baseline()

        try:
            plan = MatrixPlanner(cfg, baseline=baseline).plan()
        except PlanningError as exc:
            logger.error("PLANNING ERROR: %s", exc)
            return RunOutcome(ExitCode.FATAL, error=str(exc))

        try:
            run_preflight(cfg, plan)
        except EnvironmentCheckError as exc:
            logger.error("ENVIRONMENT ERROR: %s", exc)
            return RunOutcome(ExitCode.FATAL, plan=plan, error=str(exc))
        except PlanningError as exc:
            logger.error("PLANNING ERROR: %s", exc)
            return RunOutcome(ExitCode.FATAL, plan=plan, error=str(exc))

        if cfg.validate_only:
            print_plan(plan, self.out)
            logger.info("Validation only: %d cells planned, nothing executed", len(plan))
            return RunOutcome(ExitCode.SUCCESS, plan=plan)

        collector, cancelled = await self._execute(plan)

        correlation = None
        if cfg.failure_correlation:
            correlation = correlate(collector.records, cfg.suspect_threshold)

        report = ResultAggregator(cfg).aggregate(
            collector.records,
            preset=plan.preset,
            partial=cancelled,
            correlation=correlation,
            baseline=baseline,
            baseline_error=baseline_error,
            resource_usage=self.monitor.usage_summary() if self.monitor else None,
        )

        artifacts: list[Path] = []
        if cfg.generate_report or cancelled:
            artifacts = write_reports(report, self._report_formats(), cfg.reports_dir)
        print_summary(report, self.out)

        if cfg.update_baseline:
            if cancelled:
                logger.warning("Run was cancelled; baseline not updated")
            else:
                save_baseline(build_baseline(report), cfg.resolved_baseline_path)

        if self.notifier is not None:
            await self.notifier.notify(report)

        if cancelled:
            exit_code = ExitCode.CANCELLED
        elif not report.threshold.met:
            logger.error(
                "Pass rate %.1f%% below threshold %.1f%%",
                report.threshold.pass_rate_pct, report.threshold.threshold_pct,
            )
            exit_code = ExitCode.THRESHOLD_NOT_MET
        else:
            exit_code = ExitCode.SUCCESS
        return RunOutcome(exit_code, plan=plan, report=report, artifacts=artifacts)
