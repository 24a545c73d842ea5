from __future__ import annotations

import asyncio
import json
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from forwarding.errors import SourceReadFailure
from forwarding.models import EventRecord
from forwarding.sources import InMemoryLogSource, JsonlFileLogSource
from forwarding.tail import TailReader

# Captured before the unit conftest swaps in an inline `to_thread`.
_REAL_TO_THREAD = asyncio.to_thread


class _StuckSource(InMemoryLogSource):
    """Source whose reads of `stuck` block until `release` is set."""

    def __init__(self, stuck: str) -> None:
        super().__init__()
        self._stuck = stuck
        self.release = threading.Event()

    def read_since(self, source: str, since_id: int) -> list[EventRecord]:
        if source == self._stuck:
            self.release.wait(timeout=5)
        return super().read_since(source, since_id)


def _record(record_id: int, message: str = "hello") -> EventRecord:
    return EventRecord(
        record_id=record_id,
        time_created=datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
        provider_name="App",
        level="Information",
        event_id=1000,
        machine_name="host-1",
        message=message,
    )


@pytest.mark.asyncio
async def test_poll_without_bookmark_returns_nothing() -> None:
    source = InMemoryLogSource()
    source.add("App", _record(1), _record(2))

    assert await TailReader(source).poll("App", None) == []


@pytest.mark.asyncio
async def test_poll_sorts_ascending_and_filters_by_bookmark() -> None:
    source = InMemoryLogSource()
    source.add("App", _record(45), _record(43), _record(44), _record(42))

    batch = await TailReader(source).poll("App", 42)

    assert [r.record_id for r in batch] == [43, 44, 45]


@pytest.mark.asyncio
async def test_poll_drops_duplicates_and_stale_records() -> None:
    class _SloppySource(InMemoryLogSource):
        def read_since(self, source: str, since_id: int) -> list[EventRecord]:
            # Ignores the bound and repeats a record.
            return [_record(3), _record(5, "first"), _record(4), _record(5, "again")]

    batch = await TailReader(_SloppySource()).poll("App", 3)

    assert [r.record_id for r in batch] == [4, 5]
    assert batch[1].message == "first"


@pytest.mark.asyncio
async def test_poll_caps_batch_size_to_lowest_ids() -> None:
    source = InMemoryLogSource()
    source.add("App", *[_record(i) for i in range(10, 0, -1)])

    batch = await TailReader(source, max_batch_records=3).poll("App", 0)

    assert [r.record_id for r in batch] == [1, 2, 3]


@pytest.mark.asyncio
async def test_latest_is_zero_for_empty_source() -> None:
    source = InMemoryLogSource()
    reader = TailReader(source)

    assert await reader.latest("App") == 0
    source.add("App", _record(42), _record(7))
    assert await reader.latest("App") == 42


@pytest.mark.asyncio
async def test_source_errors_become_source_read_failure() -> None:
    class _BrokenSource(InMemoryLogSource):
        def read_since(self, source: str, since_id: int) -> list[EventRecord]:
            raise PermissionError("access denied to channel")

    with pytest.raises(SourceReadFailure) as excinfo:
        await TailReader(_BrokenSource()).poll("Security", 1)
    assert excinfo.value.source == "Security"
    assert isinstance(excinfo.value.__cause__, PermissionError)


@pytest.mark.asyncio
async def test_stuck_source_read_times_out(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("forwarding.tail.asyncio.to_thread", _REAL_TO_THREAD)
    source = _StuckSource("Security")
    source.add("Security", _record(2))
    reader = TailReader(source, timeout_s=0.05)
    try:
        with pytest.raises(SourceReadFailure) as excinfo:
            await reader.poll("Security", 1)
    finally:
        source.release.set()

    assert excinfo.value.source == "Security"
    assert "timed out" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, TimeoutError)


def test_max_batch_records_must_be_positive() -> None:
    with pytest.raises(ValueError):
        TailReader(InMemoryLogSource(), max_batch_records=0)


@pytest.mark.asyncio
async def test_jsonl_source_reads_records_and_skips_bad_lines(tmp_path: Path) -> None:
    lines = [
        json.dumps({"record_id": 2, "time_created": "2024-06-01T12:00:00Z", "message": "two", "keywords": ["Audit Success"]}),
        "not json",
        json.dumps({"time_created": "2024-06-01T12:00:00Z"}),
        "",
        json.dumps({"record_id": 1, "time_created": "2024-06-01T11:59:00Z", "message": "one", "extra": True}),
    ]
    (tmp_path / "App.jsonl").write_text("\n".join(lines) + "\n", encoding="utf-8")
    source = JsonlFileLogSource(tmp_path)
    reader = TailReader(source)

    assert await reader.latest("App") == 2
    batch = await reader.poll("App", 0)
    assert [r.record_id for r in batch] == [1, 2]
    assert batch[1].keywords == "Audit Success"
    assert await reader.latest("Missing") == 0
    assert await reader.poll("Missing", 0) == []
