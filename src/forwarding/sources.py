"""Log source interface and implementations.

The engine depends on this small interface so the underlying event-log query
facility can be swapped without changing tailing or forwarding code.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from .models import EventRecord, RecordId

logger = logging.getLogger(__name__)


class LogSource(Protocol):
    def latest_record_id(self, source: str) -> RecordId | None:
        """Return the id of the newest record, or None if the source is empty."""

    def read_since(self, source: str, since_id: RecordId) -> Iterable[EventRecord]:
        """Return records with id greater than `since_id`, in any order."""


class InMemoryLogSource:
    """In-memory log source for tests and local debugging."""

    def __init__(self) -> None:
        """Create an empty in-memory source."""
        self._lock = threading.Lock()
        self._records: dict[str, list[EventRecord]] = {}

    def add(self, source: str, *records: EventRecord) -> None:
        """Append records to a source (order is preserved as given)."""
        with self._lock:
            self._records.setdefault(source, []).extend(records)

    def latest_record_id(self, source: str) -> RecordId | None:
        with self._lock:
            records = self._records.get(source, [])
            if not records:
                return None
            return max(r.record_id for r in records)

    def read_since(self, source: str, since_id: RecordId) -> list[EventRecord]:
        with self._lock:
            return [r for r in self._records.get(source, []) if r.record_id > since_id]


class JsonlFileLogSource:
    """Log source backed by one append-only JSONL file per source.

    `<directory>/<source>.jsonl` holds one JSON object per line with the
    `EventRecord` fields. A missing file is an empty source. Malformed lines are
    skipped with a warning so one bad line cannot wedge a source forever.
    """

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)

    def path_for(self, source: str) -> Path:
        return self._dir / f"{source}.jsonl"

    def _iter_records(self, source: str) -> Iterable[EventRecord]:
        path = self.path_for(source)
        if not path.exists():
            return
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    payload: Any = json.loads(stripped)
                    yield EventRecord.model_validate(payload)
                except (ValueError, ValidationError) as exc:
                    logger.warning("Skipping malformed record %s:%d: %s", path, lineno, exc)

    def latest_record_id(self, source: str) -> RecordId | None:
        latest: RecordId | None = None
        for record in self._iter_records(source):
            if latest is None or record.record_id > latest:
                latest = record.record_id
        return latest

    def read_since(self, source: str, since_id: RecordId) -> list[EventRecord]:
        return [r for r in self._iter_records(source) if r.record_id > since_id]
