"""Baseline persistence: the aggregate a later run compares itself to."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from compatmatrix.errors import AggregationError
from compatmatrix.models import AggregatedReport, Baseline, CellState

logger = logging.getLogger(__name__)


def load_baseline(path: Path) -> Baseline | None:
    """Read the baseline at *path*.

    Returns None when the file does not exist.  Raises AggregationError when
    it exists but cannot be read or parsed.
    """
    if not path.exists():
        logger.info("No baseline at %s", path)
        return None
    try:
        data = json.loads(path.read_text())
        baseline = Baseline.model_validate(data)
    except (OSError, ValueError, ValidationError) as exc:
        raise AggregationError(f"baseline {path} is unreadable: {exc}") from exc
    logger.info(
        "Loaded baseline from %s (created %s, pass rate %.1f%%)",
        path, baseline.created_at.isoformat(), baseline.pass_rate * 100,
    )
    return baseline


def build_baseline(report: AggregatedReport) -> Baseline:
    cell_durations = {
        r.cell_id: r.duration_sec
        for r in report.records
        if r.state in (CellState.PASSED, CellState.FAILED)
    }
    dimension_durations: dict = {}
    for row in report.breakdown:
        if row.mean_duration_sec > 0:
            dimension_durations.setdefault(row.dimension, {})[row.value] = row.mean_duration_sec
    return Baseline(
        created_at=datetime.now(timezone.utc),
        pass_rate=report.summary.pass_rate,
        total=report.summary.total,
        dimension_durations=dimension_durations,
        cell_durations=cell_durations,
    )


def save_baseline(baseline: Baseline, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(baseline.model_dump(mode="json"), indent=2))
    tmp.replace(path)
    logger.info("Saved baseline to %s", path)
    return path
