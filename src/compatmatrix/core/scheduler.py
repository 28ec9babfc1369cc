"""Adaptive Scheduler: run an ExecutionPlan on a resizable pool of slots.

A single coordinating loop owns the pending cells, the slot table and
``current_parallelism``.  Slot tasks only run their cell through the
executor; completions are handled back in the loop, which forwards every
terminal ResultRecord to the results queue.  A ``None`` sentinel is put on
the queue when the loop exits.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from compatmatrix.config import RunConfig
from compatmatrix.models import (
    CellState,
    ExecutionPlan,
    ResultRecord,
    SuiteKind,
    TestMatrixCell,
)

from .executor import CellExecutor
from .resource_monitor import ResourceMonitor

logger = logging.getLogger(__name__)


@dataclass
class WorkerSlot:
    slot_id: int
    cell: TestMatrixCell
    task: asyncio.Task


class ParallelismController:
    """Watermark-driven sizing with hysteresis.

    Below ``low`` for ``hysteresis`` consecutive ticks -> +1.
    Above ``high`` on any tick -> -1.  Anything in between resets the
    low-tick counter.
    """

    def __init__(
        self,
        min_parallel: int,
        max_parallel: int,
        low: float,
        high: float,
        hysteresis: int,
        start: int | None = None,
    ):
        self.min_parallel = min_parallel
        self.max_parallel = max_parallel
        self.low = low
        self.high = high
        self.hysteresis = hysteresis
        self.current = max_parallel if start is None else start
        self._low_ticks = 0

    def observe(self, utilization: float, demand: int) -> int:
        """Feed one tick's utilization; returns the new parallelism.

        *demand* is running + pending; growth never exceeds it.
        """
        if utilization > self.high:
            self._low_ticks = 0
            self.current = max(self.min_parallel, self.current - 1)
        elif utilization < self.low:
            self._low_ticks += 1
            if self._low_ticks >= self.hysteresis:
                self._low_ticks = 0
                ceiling = min(self.max_parallel, max(self.min_parallel, demand))
                if self.current < ceiling:
                    self.current += 1
        else:
            self._low_ticks = 0
        return self.current


class CircuitBreaker:
    """Per-suite failure rate over the last ``window`` executed outcomes."""

    def __init__(self, threshold: float, window: int = 10, min_samples: int = 3):
        self.threshold = threshold
        self.window = window
        self.min_samples = min_samples
        self._history: dict[SuiteKind, deque[bool]] = {}

    def record(self, suite: SuiteKind, failed: bool) -> None:
        self._history.setdefault(suite, deque(maxlen=self.window)).append(failed)

    def failure_rate(self, suite: SuiteKind) -> float:
        history = self._history.get(suite)
        if not history:
            return 0.0
        return sum(history) / len(history)

    def is_open(self, suite: SuiteKind) -> bool:
        history = self._history.get(suite)
        if not history or len(history) < self.min_samples:
            return False
        return self.failure_rate(suite) >= self.threshold


@dataclass
class SchedulerStats:
    started: int = 0
    completed: int = 0
    peak_running: int = 0
    parallelism_changes: list[tuple[int, int]] = field(default_factory=list)


class Scheduler:
    """Assigns Pending cells to worker slots until every cell is terminal."""

    def __init__(
        self,
        config: RunConfig,
        plan: ExecutionPlan,
        results: asyncio.Queue,
        executor: CellExecutor | None = None,
        monitor: Optional[ResourceMonitor] = None,
    ):
        self.config = config
        self.plan = plan
        self.results = results
        self.executor = executor or CellExecutor(config)
        self.cancel_event: asyncio.Event = self.executor.cancel_event
        self.monitor = monitor
        self.controller = ParallelismController(
            min_parallel=config.min_parallel,
            max_parallel=config.max_parallel,
            low=config.low_watermark,
            high=config.high_watermark,
            hysteresis=config.hysteresis_ticks,
        )
        self.breaker = (
            CircuitBreaker(config.circuit_breaker_threshold)
            if config.circuit_breaker_threshold is not None
            else None
        )
        ordered = plan.by_cost() if config.load_balancing else list(plan.cells)
        self._pending: deque[TestMatrixCell] = deque(ordered)
        self._slots: dict[asyncio.Task, WorkerSlot] = {}
        self._failed_fast = False
        self.stats = SchedulerStats()

    # ── Public surface ──────────────────────────────────────────

    @property
    def current_parallelism(self) -> int:
        return self.controller.current

    @property
    def running_count(self) -> int:
        return len(self._slots)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Global cancellation: kill running cells, cancel pending ones."""
        if not self.cancel_event.is_set():
            logger.warning(
                "Cancelling run: %d running, %d pending", self.running_count, self.pending_count,
            )
            self.cancel_event.set()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        tick = self.config.scheduler_tick_sec
        next_tick = loop.time() + tick
        cancel_waiter = asyncio.ensure_future(self.cancel_event.wait())
        logger.info(
            "Scheduling %d cells (parallelism %d, bounds %d..%d, %s order)",
            len(self._pending), self.current_parallelism,
            self.config.min_parallel, self.config.max_parallel,
            "longest-first" if self.config.load_balancing else "plan",
        )
        try:
            while True:
                if self.cancelled:
                    await self._cancel_pending("cancelled")
                self._fill_slots()
                if not self._slots and not self._pending:
                    break

                waitset = set(self._slots)
                if not cancel_waiter.done():
                    waitset.add(cancel_waiter)
                timeout = max(0.0, next_tick - loop.time())
                done, _ = await asyncio.wait(
                    waitset, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    if task is not cancel_waiter:
                        await self._complete(task)

                if loop.time() >= next_tick:
                    self._on_tick()
                    next_tick = loop.time() + tick
        finally:
            cancel_waiter.cancel()
            if self._slots:
                self.cancel_event.set()
                await asyncio.gather(*self._slots, return_exceptions=True)
            await self.results.put(None)

        logger.info(
            "Scheduler finished: %d started, %d completed, peak parallelism %d",
            self.stats.started, self.stats.completed, self.stats.peak_running,
        )

    # ── Loop internals ──────────────────────────────────────────

    def _free_slot_id(self) -> int:
        used = {s.slot_id for s in self._slots.values()}
        slot_id = 0
        while slot_id in used:
            slot_id += 1
        return slot_id

    def _fill_slots(self) -> None:
        while self._pending and len(self._slots) < self.current_parallelism:
            if self.cancelled:
                return
            cell = self._pending.popleft()
            if self.monitor is not None:
                cell.resource_snapshot = self.monitor.snapshot()
            cell.transition(CellState.RUNNING)
            slot_id = self._free_slot_id()
            task = asyncio.create_task(self.executor.run(cell), name=f"slot-{slot_id}")
            self._slots[task] = WorkerSlot(slot_id=slot_id, cell=cell, task=task)
            self.stats.started += 1
            self.stats.peak_running = max(self.stats.peak_running, len(self._slots))
            logger.debug("slot %d <- %s", slot_id, cell.cell_id)

    async def _complete(self, task: asyncio.Task) -> None:
        slot = self._slots.pop(task)
        try:
            record: ResultRecord = task.result()
        except Exception as exc:
            # The executor itself broke; the cell still needs its one record
            logger.exception("Executor error on %s", slot.cell.cell_id)
            if not slot.cell.state.is_terminal:
                slot.cell.transition(CellState.FAILED, error=f"executor error: {exc}")
            record = ResultRecord.from_cell(slot.cell)
        self.stats.completed += 1
        await self.results.put(record)
        logger.debug("slot %d freed by %s (%s)", slot.slot_id, record.cell_id, record.state.value)

        if record.state in (CellState.PASSED, CellState.FAILED, CellState.TIMED_OUT):
            if self.breaker is not None:
                self.breaker.record(record.suite, record.state.is_failure)
                if self.breaker.is_open(record.suite):
                    await self._skip_suite(record.suite)
            if record.state.is_failure and self.config.fail_fast and not self._failed_fast:
                self._failed_fast = True
                logger.warning("Fail-fast: %s %s", record.cell_id, record.state.value)
                await self._cancel_pending(f"fail-fast after {record.cell_id}")

    async def _cancel_pending(self, reason: str) -> None:
        if not self._pending:
            return
        logger.info("Cancelling %d pending cells (%s)", len(self._pending), reason)
        while self._pending:
            cell = self._pending.popleft()
            cell.transition(CellState.CANCELLED, error=reason)
            await self.results.put(ResultRecord.from_cell(cell))

    async def _skip_suite(self, suite: SuiteKind) -> None:
        keep: deque[TestMatrixCell] = deque()
        skipped = 0
        for cell in self._pending:
            if cell.suite is suite:
                cell.transition(CellState.SKIPPED, error="circuit breaker open")
                await self.results.put(ResultRecord.from_cell(cell))
                skipped += 1
            else:
                keep.append(cell)
        self._pending = keep
        if skipped:
            logger.warning(
                "Circuit breaker open for suite %s (failure rate %.2f): skipped %d cells",
                suite.value, self.breaker.failure_rate(suite), skipped,
            )

    def _on_tick(self) -> None:
        if not self.config.adaptive_parallelism or self.monitor is None:
            return
        snap = self.monitor.snapshot()
        if snap is None:
            return
        before = self.controller.current
        after = self.controller.observe(
            snap.utilization, demand=len(self._slots) + len(self._pending),
        )
        if after != before:
            self.stats.parallelism_changes.append((before, after))
            logger.info(
                "Parallelism %d -> %d (utilization %.1f%%)", before, after, snap.utilization,
            )
