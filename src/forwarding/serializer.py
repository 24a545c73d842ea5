"""NDJSON serialization of event records.

Output is line oriented so it can be appended to a remote blob as-is: one JSON
object per record, each terminated by a newline, no surrounding array.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from .models import EventRecord


def _format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a 'Z' suffix."""
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def render_message(message: str) -> str:
    """Render the message text once, in its final form."""
    return message.replace("\r\n", "\n").replace("\r", "\n").rstrip()


def record_to_dict(record: EventRecord, source_name: str) -> dict[str, Any]:
    return {
        "timestamp": _format_timestamp(record.time_created),
        "record_id": record.record_id,
        "source": source_name,
        "provider": record.provider_name,
        "level": record.level,
        "task": record.task,
        "opcode": record.opcode,
        "keywords": record.keywords,
        "event_id": record.event_id,
        "host": record.machine_name,
        "message": render_message(record.message),
    }


def serialize(records: Sequence[EventRecord], source_name: str) -> str:
    """Serialize records into newline-delimited JSON (empty input -> "")."""
    lines = [
        json.dumps(record_to_dict(r, source_name), ensure_ascii=False, separators=(",", ":"))
        for r in records
    ]
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


def encode(text: str) -> bytes:
    return text.encode("utf-8")
