"""Persistent ingest cursor.

Records the last block whose events have all been processed so the
subscription resumes there after a restart. State is a small JSON file
written atomically (tmp + rename).
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import bittensor as bt


class IngestCursor:
    def __init__(self, state_dir: str, start_block: int = 0):
        self.state_path = Path(state_dir) / "ingest_cursor.json"
        self.start_block = start_block
        self.last_block: int | None = None
        self.updated_at: str = ""
        self._load_state()

    @property
    def resume_block(self) -> int:
        """First block to scan. Inclusive of the last processed block:
        redelivery is idempotent, a gap is not."""
        if self.last_block is None:
            return self.start_block
        return max(self.start_block, self.last_block)

    def advance(self, block: int) -> None:
        if self.last_block is not None and block <= self.last_block:
            return
        self.last_block = block
        self.updated_at = datetime.now(timezone.utc).isoformat()
        self._save_state()

    def _load_state(self) -> None:
        """Load state from disk. If missing/corrupt, start from ``start_block``."""
        if not self.state_path.exists():
            bt.logging.info({"ingest_cursor": "no_state_file, starting fresh", "start_block": self.start_block})
            return
        try:
            with open(self.state_path) as f:
                data = json.load(f)
            self.last_block = data.get("last_block")
            self.updated_at = data.get("updated_at", "")
            bt.logging.info({"ingest_cursor": "state_loaded", "last_block": self.last_block})
        except (OSError, ValueError) as e:
            bt.logging.warning({"ingest_cursor": f"state_corrupt, starting fresh: {e}"})
            self.last_block = None

    def _save_state(self) -> None:
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        data = {"last_block": self.last_block, "updated_at": self.updated_at}
        tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self.state_path.parent), suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w") as f:
                json.dump(data, f)
            os.replace(tmp_path, str(self.state_path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


__all__ = ["IngestCursor"]
