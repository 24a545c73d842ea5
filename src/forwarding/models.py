"""Normalized models for the forwarding engine.

These models intentionally include only the fields needed to:
- describe one event-log record as it is relayed
- carry the delegated credential used to reach the remote store
- report what happened to one source during one poll cycle

Log sources are expected to hand over more fields than listed here; extras are ignored.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, field_validator

RecordId: TypeAlias = int
SourceName: TypeAlias = str

CycleStatus = Literal["idle", "initialized", "delivered", "failed"]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Model(BaseModel):
    # Keep these models small and forward-compatible with evolving payloads.
    model_config = ConfigDict(extra="ignore", frozen=True)


class EventRecord(_Model):
    """A single record read from a log source."""

    record_id: RecordId
    time_created: datetime

    provider_name: str = ""
    level: str = ""
    task: str = ""
    opcode: str = ""
    keywords: str = ""
    event_id: int = 0
    machine_name: str = ""
    message: str = ""

    @field_validator("record_id")
    def validate_record_id(cls, v: int) -> int:
        if v < 0 or v >= 2**64:
            raise ValueError(f"record_id must fit in an unsigned 64-bit integer. Got: {v}")
        return v

    @field_validator("time_created")
    def validate_time_created(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("keywords", mode="before")
    def validate_keywords(cls, v: Any) -> str:
        # Sources commonly report keywords as a list of display names.
        if isinstance(v, (list, tuple)):
            return ",".join(str(k) for k in v)
        return "" if v is None else str(v)


class Credential(_Model):
    """A delegated, time-limited capability for one container.

    `token` is the SAS query string without its leading `?`.
    """

    container: str
    token: str
    expires_at: datetime

    @field_validator("token")
    def validate_token(cls, v: str) -> str:
        return v.strip().lstrip("?")

    @field_validator("expires_at")
    def validate_expires_at(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def __repr__(self) -> str:
        # Never leak the signature into logs or tracebacks.
        return f"Credential(container={self.container!r}, expires_at={self.expires_at.isoformat()})"

    __str__ = __repr__


class CycleOutcome(_Model):
    """What happened to one source during one poll cycle.

    `remote_changed` is True once bytes were appended remotely. A failed outcome
    with `remote_changed=True` means the bookmark is behind the remote data and
    the next cycle will resend the same range.
    """

    type: Literal["cycle_outcome"] = "cycle_outcome"
    source: SourceName
    status: CycleStatus
    records: int = 0
    first_record_id: RecordId | None = None
    last_record_id: RecordId | None = None
    bookmark: RecordId | None = None
    blob_path: str | None = None
    error_kind: str | None = None
    error: str | None = None
    remote_changed: bool = False
    ts: datetime | None = None

    @property
    def retry_safe(self) -> bool:
        """True when re-running the cycle cannot duplicate remote data."""
        return not (self.status == "failed" and self.remote_changed)
