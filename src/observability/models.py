"""Observability record models.

Records are designed to be:
- Durable and append-only (sink decides storage).
- Easy to trace per source and record-id range.
- Safe by default (no credentials, no event payloads).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(tz=timezone.utc)


RecordKind = Literal["delivery", "init", "error"]


class ObservabilityRecord(BaseModel):
    """A durable, structured record derived from one per-source cycle outcome."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    # High-level classification for downstream filtering.
    kind: RecordKind

    # The outcome status, or the failure class for errors (e.g. "AppendFailure").
    event_type: str

    # Where the record was produced (e.g., "forwarding_loop").
    stage: str

    source: str
    first_record_id: int | None = None
    last_record_id: int | None = None
    blob_path: str | None = None

    # True when remote data is ahead of the local bookmark (duplicates expected).
    remote_changed: bool = False

    occurred_at: datetime
    logged_at: datetime = Field(default_factory=utc_now)

    summary: dict[str, Any] = Field(default_factory=dict)
