import asyncio
import shlex
import sys
from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from compatmatrix.config import RunConfig
from compatmatrix.models import (
    CellState,
    ExecutionPlan,
    ResourceSnapshot,
    ResultRecord,
    SuiteKind,
    TestMatrixCell,
)

PYTHON = shlex.quote(sys.executable)


def py_command(code: str) -> str:
    """Suite command template running *code* with this interpreter."""
    return f"{PYTHON} -c {shlex.quote(code)}"


def make_config(tmp_path, **overrides) -> RunConfig:
    defaults = dict(
        output_dir=tmp_path / "out",
        project_dir=tmp_path,
        min_free_disk_mb=0,
        scheduler_tick_sec=0.01,
        retry_base_delay_sec=0.0,
        retry_jitter=0.0,
        kill_grace_sec=1.0,
    )
    defaults.update(overrides)
    return RunConfig(**defaults)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


def make_cell(version="1.9.8", os="linux", arch="amd64", suite=SuiteKind.UNIT, cost=0.0):
    return TestMatrixCell(
        tool_version=version, os=os, arch=arch, suite=suite, estimated_cost_sec=cost,
    )


def make_plan(cells: list[TestMatrixCell], preset="custom") -> ExecutionPlan:
    def uniq(values):
        return list(dict.fromkeys(values))

    return ExecutionPlan(
        preset=preset,
        versions=uniq(c.tool_version for c in cells),
        oses=uniq(c.os for c in cells),
        archs=uniq(c.arch for c in cells),
        suites=uniq(c.suite for c in cells),
        cells=cells,
    )


def make_record(
    version="1.9.8",
    os="linux",
    arch="amd64",
    suite=SuiteKind.UNIT,
    state=CellState.PASSED,
    duration=1.0,
    **kwargs,
) -> ResultRecord:
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return ResultRecord(
        cell_id=f"{version}/{os}/{arch}/{suite.value}",
        tool_version=version,
        os=os,
        arch=arch,
        suite=suite,
        state=state,
        duration_sec=duration,
        attempts=1,
        started_at=start,
        finished_at=start + timedelta(seconds=duration),
        **kwargs,
    )


def snapshot(cpu=10.0, memory=10.0) -> ResourceSnapshot:
    return ResourceSnapshot(
        cpu_percent=cpu, memory_percent=memory, load_avg=0.5,
        sampled_at=datetime.now(timezone.utc),
    )


class FakeExecutor:
    """Resolves cells from an outcome table instead of running processes.

    ``outcomes`` maps cell_id -> CellState, or is a callable(cell) -> CellState.
    ``delays`` maps cell_id -> seconds the cell stays Running.
    """

    def __init__(
        self,
        outcomes: dict | Callable | None = None,
        default: CellState = CellState.PASSED,
        delays: dict | None = None,
        default_delay: float = 0.0,
    ):
        self.cancel_event = asyncio.Event()
        self.outcomes = outcomes or {}
        self.default = default
        self.delays = delays or {}
        self.default_delay = default_delay
        self.running = 0
        self.peak = 0
        self.order: list[str] = []

    def _outcome(self, cell: TestMatrixCell) -> CellState:
        if callable(self.outcomes):
            return self.outcomes(cell)
        return self.outcomes.get(cell.cell_id, self.default)

    async def run(self, cell: TestMatrixCell) -> ResultRecord:
        assert cell.state is CellState.RUNNING
        self.running += 1
        self.peak = max(self.peak, self.running)
        self.order.append(cell.cell_id)
        try:
            delay = self.delays.get(cell.cell_id, self.default_delay)
            try:
                await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
                state = CellState.CANCELLED
            except asyncio.TimeoutError:
                state = self._outcome(cell)
        finally:
            self.running -= 1
        cell.attempts = 1
        cell.transition(state, error=None if state is CellState.PASSED else state.value)
        return ResultRecord.from_cell(cell)


async def drain(queue: asyncio.Queue) -> list[ResultRecord]:
    """All records on the queue up to the None sentinel."""
    records = []
    while True:
        item = await queue.get()
        if item is None:
            return records
        records.append(item)


class ScriptedSampler:
    """Returns the given (cpu, memory) readings in order, repeating the last."""

    def __init__(self, readings):
        self.readings = list(readings)
        self.calls = 0

    def sample(self) -> ResourceSnapshot:
        cpu, mem = self.readings[min(self.calls, len(self.readings) - 1)]
        self.calls += 1
        return snapshot(cpu, mem)
