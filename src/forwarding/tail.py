"""Incremental tailing of log sources."""

from __future__ import annotations

import asyncio

from .errors import SourceReadFailure
from .models import EventRecord, RecordId
from .sources import LogSource


class TailReader:
    """Reads records newer than a bookmark, ascending by record id.

    Sources may hand records back out of order (provider buffering) or repeat
    one; the reader sorts and de-duplicates so appends stay in id order. At most
    `max_batch_records` are returned per call; callers iterate for the rest.
    """

    def __init__(self, source: LogSource, *, max_batch_records: int = 1000, timeout_s: float = 30.0) -> None:
        if max_batch_records <= 0:
            raise ValueError(f"max_batch_records must be > 0. Got: {max_batch_records}")
        self._source = source
        self.max_batch_records = max_batch_records
        self._timeout_s = timeout_s

    async def poll(self, source: str, since_id: RecordId | None) -> list[EventRecord]:
        """Return records with id > `since_id`, sorted ascending.

        A missing bookmark (`None`) returns nothing: the engine never backfills
        history the first time it sees a source.
        """
        if since_id is None:
            return []

        def _read() -> list[EventRecord]:
            return list(self._source.read_since(source, since_id))

        records = await self._call(source, _read)

        by_id: dict[RecordId, EventRecord] = {}
        for record in records:
            if record.record_id > since_id:
                by_id.setdefault(record.record_id, record)
        ordered = [by_id[rid] for rid in sorted(by_id)]
        return ordered[: self.max_batch_records]

    async def latest(self, source: str) -> RecordId:
        """Return the newest record id of `source`, or 0 when it is empty."""
        latest = await self._call(source, lambda: self._source.latest_record_id(source))
        return 0 if latest is None else latest

    async def _call(self, source: str, func):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func), timeout=self._timeout_s)
        except TimeoutError as exc:
            raise SourceReadFailure(f"reading {source} timed out after {self._timeout_s}s", source=source) from exc
        except Exception as exc:  # noqa: BLE001 - normalize into the failure taxonomy
            raise SourceReadFailure(f"reading {source} failed: {exc}", source=source) from exc
