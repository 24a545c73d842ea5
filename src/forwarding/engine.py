"""Forwarding loop.

Responsibilities:
- for each configured source: load bookmark, poll, append, advance bookmark
- isolate failures per source so one broken source never stalls the others
- renew the delegated credential proactively between cycles
- sleep between cycles through an injectable ticker so tests never sleep
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Protocol

from blobstore.paths import daily_blob_path
from observability.recorder import ObservabilityRecorder

from .bookmarks import BookmarkStore
from .credentials import CredentialCache
from .errors import AuthFailure, BookmarkPersistFailure, RelayError, redact
from .models import CycleOutcome, EventRecord, RecordId, utc_now
from .serializer import encode, serialize
from .tail import TailReader

logger = logging.getLogger(__name__)


class Appender(Protocol):
    async def ensure_container(self) -> bool:
        """Create the container if it does not exist yet."""

    async def ensure_target(self, path: str) -> bool:
        """Create the append target at `path` unless it already exists."""

    async def append(self, path: str, data: bytes) -> int:
        """Append `data` to the end of the target at `path`."""


class Ticker(Protocol):
    async def wait(self, interval_s: float, stop: asyncio.Event) -> bool:
        """Wait for the next tick. Returns False once `stop` is set."""


class AsyncioTicker:
    """Sleeps for the interval, waking early when stop is requested."""

    async def wait(self, interval_s: float, stop: asyncio.Event) -> bool:
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_s)
        except TimeoutError:
            return True
        return False


class ForwardingLoop:
    """Round-robin poller that relays new records from each source to the store.

    Per source and cycle:
    1. Load the bookmark. A missing bookmark is initialized to the source's
       current latest record id (0 when empty) and nothing is forwarded.
    2. Poll records newer than the bookmark.
    3. Non-empty batch: ensure today's target, serialize, append, then advance
       the bookmark to the batch's highest record id.
    4. Repeat 2-3 while full chunks keep coming, up to `max_chunks_per_cycle`.

    The bookmark only moves after a successful append, so delivery is
    at-least-once.
    """

    def __init__(
        self,
        *,
        sources: Sequence[str],
        tail: TailReader,
        bookmarks: BookmarkStore,
        appender: Appender,
        credentials: CredentialCache,
        interval_s: float = 60.0,
        max_chunks_per_cycle: int = 10,
        ticker: Ticker | None = None,
        clock: Callable[[], datetime] = utc_now,
        recorder: ObservabilityRecorder | None = None,
    ) -> None:
        """Create a loop over `sources`; each owns its bookmark and daily targets."""
        self._sources = list(sources)
        self._tail = tail
        self._bookmarks = bookmarks
        self._appender = appender
        self._credentials = credentials
        self._interval_s = interval_s
        self._max_chunks = max_chunks_per_cycle
        self._ticker = ticker or AsyncioTicker()
        self._clock = clock
        self._recorder = recorder

        self._stop = asyncio.Event()
        self._container_ready = False
        self.cycles = 0

    @property
    def sources(self) -> list[str]:
        return list(self._sources)

    def request_stop(self) -> None:
        """Ask the loop to stop after the source currently being processed."""
        self._stop.set()

    async def run(self, *, once: bool = False) -> None:
        """Run cycles until stopped (or a single cycle when `once`)."""
        logger.info("Forwarding loop started for %d source(s): %s", len(self._sources), ", ".join(self._sources))
        while not self._stop.is_set():
            await self.run_cycle()
            if once:
                break
            if not await self._ticker.wait(self._interval_s, self._stop):
                break
        logger.info("Forwarding loop stopped after %d cycle(s)", self.cycles)

    async def run_cycle(self) -> list[CycleOutcome]:
        """Process every source once, then renew the credential if it is close to expiry."""
        outcomes: list[CycleOutcome] = []
        await self._ensure_container()

        for name in self._sources:
            if self._stop.is_set():
                logger.info("Stop requested; skipping remaining sources this cycle")
                break
            outcome = await self.process_source(name)
            outcomes.append(outcome)
            await self._record(outcome)

        try:
            if await self._credentials.refresh_if_needed():
                logger.info("Credential refreshed proactively")
        except AuthFailure as exc:
            logger.warning("Proactive credential refresh failed, retrying next cycle: %s", exc)

        self.cycles += 1
        return outcomes

    async def _ensure_container(self) -> None:
        if self._container_ready:
            return
        try:
            await self._appender.ensure_container()
        except Exception as exc:  # noqa: BLE001 - retried next cycle
            logger.warning("Could not ensure container exists, retrying next cycle: %s", redact(str(exc)))
            return
        self._container_ready = True

    async def process_source(self, name: str) -> CycleOutcome:
        """Run one cycle for one source. Never raises; failures become outcomes."""
        bookmark: RecordId | None = None
        delivered: list[EventRecord] = []
        blob_path: str | None = None
        remote_changed = False
        try:
            bookmark = self._bookmarks.load(name)
            if bookmark is None:
                latest = await self._tail.latest(name)
                self._bookmarks.save(name, latest)
                logger.info("Initialized bookmark for %s at record %d (no backfill)", name, latest)
                return self._outcome(name, "initialized", bookmark=latest)

            for _ in range(self._max_chunks):
                batch = await self._tail.poll(name, bookmark)
                if not batch:
                    break

                blob_path = daily_blob_path(name, self._clock())
                await self._appender.ensure_target(blob_path)
                await self._appender.append(blob_path, encode(serialize(batch, name)))
                remote_changed = True

                last_id = batch[-1].record_id
                self._bookmarks.save(name, last_id)
                bookmark = last_id
                remote_changed = False
                delivered.extend(batch)
                logger.info(
                    "Forwarded %d record(s) from %s (%d..%d) to %s",
                    len(batch), name, batch[0].record_id, last_id, blob_path,
                )
                if len(batch) < self._tail.max_batch_records:
                    break
        except BookmarkPersistFailure as exc:
            if remote_changed:
                logger.error(
                    "Appended records for %s but could not save the bookmark; the next cycle will resend them: %s",
                    name, exc,
                )
            else:
                logger.warning("Could not initialize bookmark for %s, retrying next cycle: %s", name, exc)
            return self._failed(name, exc, bookmark, delivered, blob_path, remote_changed=remote_changed)
        except RelayError as exc:
            logger.warning("Forwarding %s failed, retrying next cycle: %s", name, exc)
            changed = remote_changed or not exc.retry_safe
            return self._failed(name, exc, bookmark, delivered, blob_path, remote_changed=changed)
        except Exception as exc:  # noqa: BLE001 - isolate failures per source
            logger.error("Unexpected error forwarding %s: %s", name, redact(repr(exc)))
            logger.debug("Traceback for %s failure", name, exc_info=True)
            return self._failed(name, exc, bookmark, delivered, blob_path, remote_changed=remote_changed)

        if not delivered:
            return self._outcome(name, "idle", bookmark=bookmark)
        return self._outcome(
            name,
            "delivered",
            records=len(delivered),
            first_record_id=delivered[0].record_id,
            last_record_id=delivered[-1].record_id,
            bookmark=bookmark,
            blob_path=blob_path,
        )

    def _outcome(self, name: str, status, **fields) -> CycleOutcome:
        return CycleOutcome(source=name, status=status, ts=self._clock(), **fields)

    def _failed(
        self,
        name: str,
        exc: BaseException,
        bookmark: RecordId | None,
        delivered: list[EventRecord],
        blob_path: str | None,
        *,
        remote_changed: bool,
    ) -> CycleOutcome:
        return self._outcome(
            name,
            "failed",
            records=len(delivered),
            first_record_id=delivered[0].record_id if delivered else None,
            last_record_id=delivered[-1].record_id if delivered else None,
            bookmark=bookmark,
            blob_path=blob_path,
            error_kind=exc.kind if isinstance(exc, RelayError) else type(exc).__name__,
            error=redact(str(exc)),
            remote_changed=remote_changed,
        )

    async def _record(self, outcome: CycleOutcome) -> None:
        if self._recorder is None or outcome.status == "idle":
            return
        await self._recorder.record_outcome(outcome, stage="forwarding_loop")
