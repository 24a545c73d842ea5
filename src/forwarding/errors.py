"""Failure taxonomy for the forwarding engine.

Every failure carries `retry_safe`:

- True: nothing changed remotely or locally; the next cycle simply tries again.
- False: remote state moved ahead of local state (an append landed but the
  bookmark was not saved). Re-running resends the same range, so consumers see
  duplicates. No compensating action should be attempted.
"""

from __future__ import annotations

import re

# SAS signatures surface in error text through request URLs.
_SAS_SIGNATURE = re.compile(r"(sig=)[^&\s]+", re.IGNORECASE)


def redact(text: str) -> str:
    """Mask SAS signatures in free text."""
    return _SAS_SIGNATURE.sub(r"\1[REDACTED]", text)


class RelayError(RuntimeError):
    """Base class for failures caught at per-source granularity."""

    retry_safe: bool = True

    def __init__(self, message: str, *, source: str | None = None) -> None:
        self.source = source
        super().__init__(redact(message))

    @property
    def kind(self) -> str:
        return type(self).__name__


class AuthFailure(RelayError):
    """Delegated credential could not be issued or renewed."""


class SourceReadFailure(RelayError):
    """The log source query failed for one source."""


class TargetCreateFailure(RelayError):
    """Creating the daily append target failed with something other than a conflict."""


class AppendFailure(RelayError):
    """The append was rejected or the connection failed; nothing was delivered."""


class BookmarkPersistFailure(RelayError):
    """The bookmark could not be written after a successful append."""

    retry_safe = False
