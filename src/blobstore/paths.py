"""Remote object naming.

One append target per source per UTC calendar day:
`events/<SourceName>/<YYYY>/<MM>/<DD>.jsonl`.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

PREFIX = "events"


def daily_blob_path(source: str, day: date | datetime) -> str:
    """Return the daily blob path for `source` on the UTC date of `day`."""
    if not source.strip():
        raise ValueError(f"invalid source name for blob path: {source!r}")
    if isinstance(day, datetime):
        if day.tzinfo is None:
            day = day.replace(tzinfo=timezone.utc)
        day = day.astimezone(timezone.utc).date()
    return f"{PREFIX}/{source}/{day:%Y}/{day:%m}/{day:%d}.jsonl"
