"""Failure Correlator: find dimension values shared by clusters of failures.

For every value ``v`` of every dimension ``d``::

    ratio(v) = failed(d=v) / total(d=v)

over terminal, non-cancelled records, where failed counts Failed and
TimedOut.  A value is suspect when ``ratio >= threshold`` and it has at
least two samples.  A dimension whose values all share one ratio does not
discriminate between them, so it yields no suspects.
"""

from __future__ import annotations

import logging
from typing import Iterable

from compatmatrix.models import (
    CellState,
    CorrelationReport,
    Dimension,
    ResultRecord,
    SuspectValue,
)

logger = logging.getLogger(__name__)

MIN_SAMPLES = 2


def _tally(
    records: list[ResultRecord], dimension: Dimension,
) -> dict[str, tuple[int, int]]:
    """value -> (failed, total), in first-seen order."""
    counts: dict[str, list[int]] = {}
    for rec in records:
        entry = counts.setdefault(rec.value_of(dimension), [0, 0])
        entry[1] += 1
        if rec.state.is_failure:
            entry[0] += 1
    return {value: (f, t) for value, (f, t) in counts.items()}


def correlate(
    records: Iterable[ResultRecord], threshold: float = 0.5,
) -> CorrelationReport:
    # Sort by cell key so the outcome never depends on completion order
    considered = sorted(
        (r for r in records if r.state.is_terminal and r.state is not CellState.CANCELLED),
        key=lambda r: r.key,
    )

    ratios: dict[Dimension, dict[str, float]] = {}
    suspects: list[SuspectValue] = []
    for dim in Dimension:
        tally = _tally(considered, dim)
        if not tally:
            continue
        dim_ratios = {v: f / t for v, (f, t) in tally.items()}
        ratios[dim] = dim_ratios
        if len(set(dim_ratios.values())) <= 1:
            continue
        order = {v: i for i, v in enumerate(tally)}
        found = [
            SuspectValue(dimension=dim, value=v, failed=f, total=t, ratio=f / t)
            for v, (f, t) in tally.items()
            if t >= MIN_SAMPLES and f / t >= threshold
        ]
        found.sort(key=lambda s: (-s.ratio, order[s.value]))
        suspects.extend(found)

    suspect_keys = {(s.dimension, s.value) for s in suspects}
    classification = {}
    for rec in considered:
        if not rec.state.is_failure:
            continue
        systemic = any((dim, rec.value_of(dim)) in suspect_keys for dim in Dimension)
        classification[rec.cell_id] = "systemic" if systemic else "isolated"

    if suspects:
        logger.info(
            "Failure correlation: %d suspect value(s): %s",
            len(suspects),
            ", ".join(f"{s.dimension.value}={s.value} ({s.ratio:.0%})" for s in suspects),
        )
    else:
        logger.info("Failure correlation: no suspect values")
    return CorrelationReport(
        threshold=threshold,
        ratios=ratios,
        suspects=suspects,
        classification=classification,
    )
