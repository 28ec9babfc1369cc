"""Webhook notification of the final verdict."""

import asyncio
import logging
from typing import Any

import httpx

from compatmatrix.models import AggregatedReport

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
BACKOFF_BASE = 1.0


def build_payload(report: AggregatedReport) -> dict[str, Any]:
    s = report.summary
    t = report.threshold
    payload: dict[str, Any] = {
        "text": (
            f"Compatibility matrix ({report.preset}): {s.passed}/{s.total} passed, "
            f"pass rate {t.pass_rate_pct:.1f}% (threshold {t.threshold_pct:.1f}%) "
            f"- {t.verdict.value}"
        ),
        "preset": report.preset,
        "partial": report.partial,
        "verdict": t.verdict.value,
        "pass_rate_pct": t.pass_rate_pct,
        "threshold_pct": t.threshold_pct,
        "summary": s.model_dump(mode="json"),
        "failed_cells": [r.cell_id for r in report.failed_records],
    }
    if report.correlation is not None:
        payload["suspects"] = [
            {"dimension": sv.dimension.value, "value": sv.value, "ratio": sv.ratio}
            for sv in report.correlation.suspects
        ]
    return payload


class WebhookNotifier:
    """POSTs a JSON payload to a webhook.  Failures are logged, never raised."""

    def __init__(self, url: str, client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self._url = url
        self._client = client
        self._timeout = timeout

    async def notify(self, report: AggregatedReport) -> bool:
        payload = build_payload(report)
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            for attempt in range(MAX_RETRIES):
                try:
                    resp = await client.post(self._url, json=payload)
                    resp.raise_for_status()
                    logger.info("Webhook notified (%d)", resp.status_code)
                    return True
                except (httpx.HTTPStatusError, httpx.TransportError) as exc:
                    if attempt < MAX_RETRIES - 1:
                        wait = BACKOFF_BASE * (2 ** attempt)
                        logger.warning(
                            "Webhook post failed (attempt %d/%d): %s, retrying in %.1fs",
                            attempt + 1, MAX_RETRIES, exc, wait,
                        )
                        await asyncio.sleep(wait)
                    else:
                        logger.warning("Webhook notification failed: %s", exc)
        finally:
            if self._client is None:
                await client.aclose()
        return False
