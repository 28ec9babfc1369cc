"""Resource Monitor: samples host CPU/memory on its own cadence.

The scheduler only ever reads the latest snapshot, which is a plain
attribute read and never waits on the sampling task.  A stale snapshot is
acceptable.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import deque
from datetime import datetime, timezone
from typing import Protocol

from compatmatrix.models import ResourceSnapshot

logger = logging.getLogger(__name__)

_PROC_STAT = "/proc/stat"
_PROC_MEMINFO = "/proc/meminfo"


def _read_cpu_jiffies() -> tuple[int, int]:
    """Read total CPU jiffies from /proc/stat.  Returns (busy, total)."""
    try:
        with open(_PROC_STAT) as f:
            for line in f:
                if line.startswith("cpu "):
                    parts = line.split()
                    user, nice, system, idle, iowait, irq, softirq, steal = (
                        int(x) for x in parts[1:9]
                    )
                    busy = user + nice + system + irq + softirq + steal
                    total = busy + idle + iowait
                    return busy, total
    except (OSError, ValueError):
        pass
    return 0, 1


def _cpu_percent(prev_busy: int, prev_total: int, cur_busy: int, cur_total: int) -> float:
    """System-wide CPU utilization between two jiffy readings (0-100)."""
    db = cur_busy - prev_busy
    dt = cur_total - prev_total
    if dt <= 0:
        return 0.0
    return max(0.0, min(100.0, db / dt * 100))


def _read_memory_percent() -> float:
    """Used memory as a percentage of MemTotal, from /proc/meminfo."""
    values: dict[str, int] = {}
    try:
        with open(_PROC_MEMINFO) as f:
            for line in f:
                key, _, rest = line.partition(":")
                if key in ("MemTotal", "MemAvailable", "MemFree"):
                    values[key] = int(rest.split()[0])
    except (OSError, ValueError, IndexError):
        return 0.0
    total = values.get("MemTotal", 0)
    if total <= 0:
        return 0.0
    available = values.get("MemAvailable", values.get("MemFree", total))
    return (total - available) / total * 100


def _read_load_avg() -> float:
    try:
        return os.getloadavg()[0]
    except (OSError, AttributeError):
        return 0.0


class Sampler(Protocol):
    def sample(self) -> ResourceSnapshot: ...


class ProcSampler:
    """Reads /proc; on hosts without it every reading is 0."""

    def __init__(self):
        self._prev_busy, self._prev_total = _read_cpu_jiffies()

    def sample(self) -> ResourceSnapshot:
        cur_busy, cur_total = _read_cpu_jiffies()
        cpu = _cpu_percent(self._prev_busy, self._prev_total, cur_busy, cur_total)
        self._prev_busy, self._prev_total = cur_busy, cur_total
        return ResourceSnapshot(
            cpu_percent=cpu,
            memory_percent=_read_memory_percent(),
            load_avg=_read_load_avg(),
            sampled_at=datetime.now(timezone.utc),
        )


class ResourceMonitor:
    """Background sampler exposing the most recent ResourceSnapshot."""

    def __init__(
        self,
        interval_sec: float = 1.0,
        sampler: Sampler | None = None,
        history: int = 3600,
    ):
        self.interval_sec = interval_sec
        self._sampler = sampler or ProcSampler()
        self._latest: ResourceSnapshot | None = None
        self._history: deque[ResourceSnapshot] = deque(maxlen=history)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def snapshot(self) -> ResourceSnapshot | None:
        """Latest sample, or None before the first one.  Never blocks."""
        return self._latest

    def sample_once(self) -> ResourceSnapshot:
        snap = self._sampler.sample()
        self._latest = snap
        self._history.append(snap)
        logger.debug(
            "Resource usage - CPU: %.1f%%, Memory: %.1f%%, Load: %.2f",
            snap.cpu_percent, snap.memory_percent, snap.load_avg,
        )
        return snap

    async def _loop(self) -> None:
        while True:
            try:
                self.sample_once()
            except Exception:
                logger.exception("Resource sampling failed")
            await asyncio.sleep(self.interval_sec)

    def start(self) -> None:
        if self.running:
            return
        self.sample_once()
        self._task = asyncio.create_task(self._loop(), name="resource-monitor")
        logger.info("Resource monitor started (interval %.1fs)", self.interval_sec)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Resource monitor stopped after %d samples", len(self._history))

    def usage_summary(self) -> dict[str, float]:
        """Average and peak utilization over the retained samples."""
        if not self._history:
            return {}
        cpu = [s.cpu_percent for s in self._history]
        mem = [s.memory_percent for s in self._history]
        return {
            "samples": float(len(self._history)),
            "cpu_avg_pct": sum(cpu) / len(cpu),
            "cpu_peak_pct": max(cpu),
            "memory_avg_pct": sum(mem) / len(mem),
            "memory_peak_pct": max(mem),
        }
