from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from forwarding.models import EventRecord
from forwarding.serializer import encode, serialize


def _record(record_id: int, **overrides) -> EventRecord:
    fields = {
        "record_id": record_id,
        "time_created": datetime(2024, 6, 1, 12, 30, 15, 123456, tzinfo=timezone.utc),
        "provider_name": "Application Error",
        "level": "Error",
        "task": "Application Crashing Events",
        "opcode": "Info",
        "keywords": "Classic",
        "event_id": 1000,
        "machine_name": "host-1",
        "message": "Faulting application name: app.exe",
    }
    fields.update(overrides)
    return EventRecord(**fields)


def test_empty_batch_serializes_to_empty_string() -> None:
    assert serialize([], "App") == ""
    assert encode(serialize([], "App")) == b""


def test_one_object_per_line_in_record_order() -> None:
    text = serialize([_record(44), _record(45)], "App")

    assert text.endswith("\n")
    lines = text.splitlines()
    assert len(lines) == 2
    assert [json.loads(line)["record_id"] for line in lines] == [44, 45]
    assert not text.startswith("[")


def test_fields_and_key_order() -> None:
    obj = json.loads(serialize([_record(43)], "App"))

    assert list(obj) == [
        "timestamp",
        "record_id",
        "source",
        "provider",
        "level",
        "task",
        "opcode",
        "keywords",
        "event_id",
        "host",
        "message",
    ]
    assert obj["timestamp"] == "2024-06-01T12:30:15.123Z"
    assert obj["source"] == "App"
    assert obj["provider"] == "Application Error"
    assert obj["event_id"] == 1000
    assert obj["host"] == "host-1"


def test_timestamps_are_converted_to_utc() -> None:
    plus_two = timezone(timedelta(hours=2))
    obj = json.loads(serialize([_record(1, time_created=datetime(2024, 6, 2, 1, 0, tzinfo=plus_two))], "App"))

    assert obj["timestamp"] == "2024-06-01T23:00:00.000Z"


def test_messages_are_rendered_and_stay_on_one_line() -> None:
    text = serialize([_record(1, message="line one\r\nline two\r\n\r\n")], "App")

    assert text.count("\n") == 1
    assert json.loads(text)["message"] == "line one\nline two"


def test_output_is_utf8_without_ascii_escaping() -> None:
    text = serialize([_record(1, message="Zugriff verweigert: Größe ✓")], "App")

    assert "Größe ✓" in text
    assert encode(text).decode("utf-8") == text
