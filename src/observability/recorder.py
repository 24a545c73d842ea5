"""Async recorder that writes observability records without blocking the event loop."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from forwarding.errors import redact
from forwarding.models import CycleOutcome

from .models import ObservabilityRecord, RecordKind, utc_now
from .sinks import ObservabilitySink

logger = logging.getLogger(__name__)


def _kind_for(outcome: CycleOutcome) -> RecordKind:
    if outcome.status == "failed":
        return "error"
    if outcome.status == "initialized":
        return "init"
    return "delivery"


def _summary(outcome: CycleOutcome) -> dict[str, Any]:
    """Build a small, safe-to-store summary payload for an outcome."""
    data: dict[str, Any] = {
        "status": outcome.status,
        "records": outcome.records,
        "bookmark": outcome.bookmark,
    }
    if outcome.error is not None:
        data["error"] = redact(outcome.error)
    return data


class ObservabilityRecorder:
    """Queues records and writes them in a background task."""

    def __init__(self, *, sink: ObservabilitySink, max_queue_size: int = 10000) -> None:
        """Create a recorder backed by a synchronous sink.

        Args:
            sink: Storage backend used by the background writer.
            max_queue_size: Bound for in-memory buffering; records may be dropped
                when full to avoid blocking forwarding.
        """
        self._sink = sink
        self._queue: asyncio.Queue[ObservabilityRecord | None] = asyncio.Queue(maxsize=max_queue_size)
        self._worker: asyncio.Task[None] | None = None
        self._closed = False

        self._write_failures = 0
        self._first_failure_at: datetime | None = None
        self._last_failure_at: datetime | None = None

    def _ensure_started(self) -> None:
        """Start the background writer task if it hasn't been started yet."""
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._run_worker(), name="observability-writer")

    def _note_failure(self) -> None:
        now = utc_now()
        self._write_failures += 1
        self._first_failure_at = self._first_failure_at or now
        self._last_failure_at = now

    async def record_outcome(self, outcome: CycleOutcome, *, stage: str) -> None:
        """Record a cycle outcome by enqueueing an ObservabilityRecord (non-blocking)."""
        if self._closed:
            return

        self._ensure_started()

        record = ObservabilityRecord(
            kind=_kind_for(outcome),
            event_type=outcome.error_kind or outcome.status,
            stage=stage,
            source=outcome.source,
            first_record_id=outcome.first_record_id,
            last_record_id=outcome.last_record_id,
            blob_path=outcome.blob_path,
            remote_changed=outcome.remote_changed,
            occurred_at=outcome.ts or utc_now(),
            logged_at=utc_now(),
            summary=_summary(outcome),
        )

        # In overload conditions we prefer dropping records over blocking forwarding.
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self._note_failure()

    async def aclose(self) -> None:
        """Flush and close the recorder.

        Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True
        if self._worker is not None:
            await self._queue.put(None)
            await self._worker
        await asyncio.to_thread(self._sink.close)

    async def _run_worker(self) -> None:
        """Background loop that drains the queue and writes to the sink."""
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                await asyncio.to_thread(self._sink.write, item)
            except Exception as exc:  # noqa: BLE001 - observability must not stop forwarding
                logger.warning("Observability sink write failed: %s", exc)
                self._note_failure()
            finally:
                self._queue.task_done()

    def degraded_status(self) -> dict[str, Any]:
        """Return a minimal degraded-status snapshot."""
        return {
            "write_failures": self._write_failures,
            "first_failure_at": self._first_failure_at,
            "last_failure_at": self._last_failure_at,
        }
