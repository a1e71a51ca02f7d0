"""Backup history persistence.

The orchestrator only knows the ``HistoryRecorder`` protocol; it hands over
one ``OperationOutcome`` per finished operation.  ``JsonHistoryStore`` is
the default implementation: a single JSON file in the history directory
with entries grouped by ``"<source> -> <target>"`` and newest first.

Key design choices:

* **Atomic writes** -- ``record()`` writes to a temp file then calls
  ``os.replace()`` so readers never see partial data.
* **Bounded** -- each pair keeps at most ``max_entries`` outcomes.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from yeoldbackup.backup.models import OperationOutcome, SyncRequest

logger = logging.getLogger(__name__)

HISTORY_FILENAME = "history.json"


class HistoryRecorder(Protocol):
    """Receives exactly one outcome per finished operation."""

    def record(
        self, request: SyncRequest, outcome: OperationOutcome
    ) -> None: ...  # pragma: no cover


class JsonHistoryStore:
    """Persist outcomes to ``<history_dir>/history.json``.

    Args:
        history_dir: Directory for the history file (created on first write).
        max_entries: Outcomes kept per source/target pair.
    """

    def __init__(self, history_dir: Path, max_entries: int = 50) -> None:
        self._history_dir = Path(history_dir)
        self._max_entries = max_entries
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._history_dir / HISTORY_FILENAME

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> dict:
        """Load the history file.

        Returns:
            The history dict.  If the file does not exist, or does not
            hold a history object, an empty history with ``version=1`` is
            returned and the next ``record()`` replaces the file.
        """
        if not self.path.exists():
            return {"version": 1, "pairs": {}}
        with open(self.path, encoding="utf-8") as fh:
            try:
                data = json.load(fh)
            except ValueError as exc:
                logger.warning(
                    "Ignoring unreadable history file %s: %s", self.path, exc
                )
                return {"version": 1, "pairs": {}}
        if not isinstance(data, dict) or not isinstance(data.get("pairs"), dict):
            logger.warning(
                "Ignoring history file %s: unexpected layout", self.path
            )
            return {"version": 1, "pairs": {}}
        return data

    def record(self, request: SyncRequest, outcome: OperationOutcome) -> None:
        """Prepend *outcome* to the pair's entries and persist atomically."""
        with self._lock:
            data = self.load()
            entries = data.setdefault("pairs", {}).setdefault(request.key, [])
            entries.insert(0, outcome.model_dump(mode="json"))
            del entries[self._max_entries :]
            self._save(data)
        logger.debug(
            "Recorded %s outcome for %s", outcome.status.value, request.key
        )

    def entries(self, request: SyncRequest) -> list[OperationOutcome]:
        """Return the stored outcomes for *request*, newest first."""
        raw = self.load().get("pairs", {}).get(request.key, [])
        return [OperationOutcome.model_validate(item) for item in raw]

    def last_outcome(self, request: SyncRequest) -> OperationOutcome | None:
        entries = self.entries(request)
        return entries[0] if entries else None

    def _save(self, data: dict) -> None:
        self._history_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._history_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
