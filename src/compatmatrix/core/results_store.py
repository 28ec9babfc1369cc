"""Raw per-cell result persistence under ``<output_dir>/raw``."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from compatmatrix.models import ResultRecord

logger = logging.getLogger(__name__)


class ResultStore:
    """Writes one JSON file per ResultRecord as cells complete."""

    def __init__(self, raw_dir: Path):
        self.raw_dir = raw_dir

    def prepare(self) -> None:
        """Create the raw directory and drop records left by a previous run."""
        self.raw_dir.mkdir(parents=True, exist_ok=True)
        stale = list(self.raw_dir.glob("*.json"))
        for path in stale:
            path.unlink()
        if stale:
            logger.debug("Removed %d stale raw records from %s", len(stale), self.raw_dir)

    def path_for(self, record: ResultRecord) -> Path:
        return self.raw_dir / f"{record.slug}.json"

    def save(self, record: ResultRecord) -> Path:
        path = self.path_for(record)
        path.write_text(json.dumps(record.model_dump(mode="json"), indent=2))
        return path

    def load_all(self) -> list[ResultRecord]:
        """All stored records, sorted by cell key."""
        if not self.raw_dir.exists():
            return []
        records = [
            ResultRecord.model_validate_json(p.read_text())
            for p in sorted(self.raw_dir.glob("*.json"))
        ]
        return sorted(records, key=lambda r: r.key)
