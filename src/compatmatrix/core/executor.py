"""Cell Executor: run one cell's suite command as an external process.

Each attempt runs in the cell's own work directory with stdout and stderr
captured into the cell's log file.  The whole process group is killed on
timeout or global cancellation (SIGTERM, then SIGKILL after a grace
period).  Failures never escape: every outcome becomes a ResultRecord.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import shutil
import signal
from collections import deque
from pathlib import Path
from typing import Awaitable, Callable

from compatmatrix.config import RunConfig
from compatmatrix.errors import CellExecutionError, CellTimeoutError
from compatmatrix.models import CellState, ResultRecord, TestMatrixCell

from .planner import LATEST
from .suites import Suite, get_suite

logger = logging.getLogger(__name__)


class _Cancelled(Exception):
    """Global cancellation interrupted an attempt."""


def retry_delay(
    strategy: str,
    base_sec: float,
    attempt: int,
    jitter: float = 0.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number *attempt* (1-based)."""
    if strategy == "fixed":
        delay = base_sec
    elif strategy == "linear":
        delay = base_sec * attempt
    elif strategy == "exponential":
        delay = base_sec * (2 ** (attempt - 1))
    else:
        raise ValueError(f"unknown retry strategy '{strategy}'")
    if jitter > 0:
        delay *= 1 + jitter * (2 * rng() - 1)
    return max(0.0, delay)


def resolve_tool_binary(version: str, config: RunConfig) -> str | None:
    """Path of the tool binary for *version*, or None if not installed."""
    if version == LATEST:
        return shutil.which(config.tool_latest_binary)
    path = Path(config.tool_binary_template.format(version=version)).expanduser()
    if path.is_file() and os.access(path, os.X_OK):
        return str(path)
    return shutil.which(path.name)


def _tail(path: Path, n: int) -> str:
    if n <= 0 or not path.exists():
        return ""
    with open(path, errors="replace") as f:
        return "".join(deque(f, maxlen=n))


class CellExecutor:
    """Runs cells one at a time; one instance is shared by all slots."""

    def __init__(
        self,
        config: RunConfig,
        cancel_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable] | None = None,
        binary_resolver: Callable[[str, RunConfig], str | None] = resolve_tool_binary,
    ):
        self.config = config
        self.cancel_event = cancel_event or asyncio.Event()
        self._sleep = sleep
        self._resolve_binary = binary_resolver

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def run(self, cell: TestMatrixCell) -> ResultRecord:
        """Execute a Running cell to a terminal state and return its record."""
        cfg = self.config
        suite = get_suite(cell.suite)
        log_path = cfg.logs_dir / f"{cell.slug}.log"
        work_dir = cfg.work_dir / cell.slug

        binary = ""
        if suite.needs_tool_binary:
            resolved = self._resolve_binary(cell.tool_version, cfg)
            if resolved is None and cfg.require_tool_binary:
                reason = f"tool binary for version {cell.tool_version} not found"
                logger.warning("Skipping %s: %s", cell.cell_id, reason)
                cell.transition(CellState.SKIPPED, error=reason)
                return ResultRecord.from_cell(cell)
            binary = resolved or ""

        work_dir.mkdir(parents=True, exist_ok=True)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        argv = suite.build_command(
            cell,
            binary=binary,
            template=cfg.suite_commands.get(cell.suite.value),
            project_dir=str(cfg.project_dir.resolve()),
            work_dir=str(work_dir.resolve()),
        )
        env = self._build_env(suite, cell, binary, work_dir)

        max_attempts = cfg.retries + 1
        final_state = CellState.FAILED
        exit_code: int | None = None
        error: str | None = None
        for attempt in range(1, max_attempts + 1):
            cell.attempts = attempt
            try:
                exit_code = await self._attempt(cell, argv, env, work_dir, log_path, attempt)
            except _Cancelled:
                final_state, error = CellState.CANCELLED, "cancelled"
                break
            except CellTimeoutError as exc:
                final_state, exit_code, error = CellState.TIMED_OUT, None, str(exc)
            except CellExecutionError as exc:
                final_state, exit_code, error = CellState.FAILED, exc.exit_code, str(exc)
            else:
                final_state, error = CellState.PASSED, None
                break

            if attempt >= max_attempts:
                break
            delay = retry_delay(
                cfg.retry_backoff, cfg.retry_base_delay_sec, attempt, cfg.retry_jitter,
            )
            logger.info(
                "%s attempt %d/%d %s, retrying in %.1fs",
                cell.cell_id, attempt, max_attempts, final_state.value, delay,
            )
            if self.cancelled or await self._backoff(delay):
                final_state, error = CellState.CANCELLED, "cancelled"
                break

        cell.transition(final_state, error=error)
        level = logging.INFO if final_state is CellState.PASSED else logging.WARNING
        logger.log(
            level, "%s %s (attempts=%d, exit=%s)",
            cell.cell_id, final_state.value.upper(), cell.attempts, exit_code,
        )
        return ResultRecord.from_cell(
            cell,
            exit_code=exit_code,
            log_path=str(log_path),
            output_tail=_tail(log_path, cfg.log_tail_lines),
        )

    def _build_env(
        self, suite: Suite, cell: TestMatrixCell, binary: str, work_dir: Path,
    ) -> dict[str, str]:
        env = dict(os.environ)
        env.update(suite.build_env(cell, binary))
        env["MATRIX_WORK_DIR"] = str(work_dir.resolve())
        env["TMPDIR"] = str(work_dir.resolve())
        return env

    async def _backoff(self, delay: float) -> bool:
        """Wait *delay* seconds.  Returns True if cancelled meanwhile."""
        if self._sleep is not None:
            await self._sleep(delay)
            return self.cancelled
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _attempt(
        self,
        cell: TestMatrixCell,
        argv: list[str],
        env: dict[str, str],
        work_dir: Path,
        log_path: Path,
        attempt: int,
    ) -> int:
        """Run one attempt.  Returns 0 or raises on any other outcome."""
        if self.cancelled:
            raise _Cancelled()
        with open(log_path, "ab") as log:
            log.write(f"=== {cell.cell_id} attempt {attempt}: {' '.join(argv)}\n".encode())
            log.flush()
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(work_dir),
                    env=env,
                    stdout=log,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                log.write(f"spawn failed: {exc}\n".encode())
                raise CellExecutionError(cell.cell_id, f"could not start {argv[0]}: {exc}")

            logger.debug("%s started pid=%d", cell.cell_id, proc.pid)
            wait_task = asyncio.ensure_future(proc.wait())
            cancel_task = asyncio.ensure_future(self.cancel_event.wait())
            try:
                done, _ = await asyncio.wait(
                    {wait_task, cancel_task},
                    timeout=self.config.timeout_sec,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            except asyncio.CancelledError:
                await self._kill(proc)
                raise
            finally:
                cancel_task.cancel()

            if wait_task not in done:
                await self._kill(proc)
                if cancel_task in done:
                    log.write(b"=== cancelled\n")
                    raise _Cancelled()
                log.write(f"=== timed out after {self.config.timeout_sec:.0f}s\n".encode())
                raise CellTimeoutError(cell.cell_id, self.config.timeout_sec)

            rc = wait_task.result()
            log.write(f"=== exit code {rc}\n".encode())
        if rc != 0:
            raise CellExecutionError(cell.cell_id, f"exit code {rc}", exit_code=rc)
        return rc

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        """Terminate the process group, escalating to SIGKILL."""
        if proc.returncode is not None:
            return
        try:
            pgid = os.getpgid(proc.pid)
            os.killpg(pgid, signal.SIGTERM)
        except ProcessLookupError:
            await proc.wait()
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.config.kill_grace_sec)
        except asyncio.TimeoutError:
            try:
                os.killpg(pgid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await proc.wait()
