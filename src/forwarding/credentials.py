"""Delegated credential lifecycle.

The cache holds exactly one credential for the target container and renews it
before it gets close to expiry:

- `acquire()` returns the cached credential while it is valid for longer than
  the safety margin, otherwise it asks the provider for a new one.
- Renewal is single-flight: concurrent callers during a renewal wait on the
  same lock and reuse the fresh credential instead of issuing their own.
- Reads of a valid credential never take the lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol
from urllib.parse import parse_qs

from .errors import AuthFailure
from .models import Credential, utc_now

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    async def issue(self, container: str, lifetime: timedelta) -> Credential:
        """Issue a delegated credential scoped to `container`, valid for about `lifetime`."""


def _parse_sas_expiry(token: str) -> datetime:
    """Read the `se=` (signed expiry) parameter of a SAS query string."""
    params = parse_qs(token.lstrip("?"))
    values = params.get("se")
    if not values:
        raise AuthFailure("SAS token has no 'se' (signed expiry) parameter")
    raw = values[0]
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise AuthFailure(f"SAS token has an unparseable expiry: {values[0]!r}") from exc


class StaticSasProvider:
    """Provider backed by a SAS token issued out of band.

    The token's own expiry wins over the requested lifetime; once it is inside
    the safety margin the cache fails with `AuthFailure` until the token is
    replaced and the process restarted.
    """

    def __init__(self, token: str) -> None:
        self._token = token.strip().lstrip("?")
        self._expires_at = _parse_sas_expiry(self._token)

    async def issue(self, container: str, lifetime: timedelta) -> Credential:
        return Credential(container=container, token=self._token, expires_at=self._expires_at)


class CredentialCache:
    """Single-slot cache of the delegated credential for one container."""

    def __init__(
        self,
        provider: CredentialProvider,
        *,
        container: str,
        lifetime: timedelta = timedelta(minutes=60),
        safety_margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if lifetime <= safety_margin:
            raise ValueError(f"lifetime ({lifetime}) must exceed safety_margin ({safety_margin})")
        self._provider = provider
        self._container = container
        self._lifetime = lifetime
        self._safety_margin = safety_margin
        self._clock = clock

        self._credential: Credential | None = None
        self._renew_lock = asyncio.Lock()
        self.renewals = 0

    @property
    def container(self) -> str:
        return self._container

    @property
    def current(self) -> Credential | None:
        """The cached credential, if any (may be inside the safety margin)."""
        return self._credential

    def _is_fresh(self, credential: Credential | None) -> bool:
        if credential is None:
            return False
        return credential.expires_at - self._clock() > self._safety_margin

    def needs_refresh(self) -> bool:
        return not self._is_fresh(self._credential)

    async def acquire(self) -> Credential:
        """Return a credential valid beyond the safety margin, renewing if needed.

        Raises:
        - `AuthFailure` when the provider fails or returns a credential that is
          already too close to expiry. The stale credential is never returned.
        """
        credential = self._credential
        if self._is_fresh(credential):
            return credential  # type: ignore[return-value]

        async with self._renew_lock:
            # Another caller may have renewed while we waited.
            credential = self._credential
            if self._is_fresh(credential):
                return credential  # type: ignore[return-value]
            return await self._renew()

    async def refresh_if_needed(self) -> bool:
        """Renew proactively when inside the safety margin. Returns True if renewed."""
        if not self.needs_refresh():
            return False
        before = self._credential
        await self.acquire()
        return self._credential is not before

    def invalidate(self) -> None:
        """Drop the cached credential so the next `acquire()` renews."""
        self._credential = None

    async def _renew(self) -> Credential:
        logger.info("Requesting delegated credential for container %s", self._container)
        try:
            credential = await self._provider.issue(self._container, self._lifetime)
        except AuthFailure:
            raise
        except Exception as exc:  # noqa: BLE001 - provider errors are auth failures
            raise AuthFailure(f"credential provider failed: {exc}") from exc

        if not self._is_fresh(credential):
            raise AuthFailure(
                f"credential for {self._container} expires at {credential.expires_at.isoformat()}, "
                f"inside the {self._safety_margin} safety margin"
            )

        self._credential = credential
        self.renewals += 1
        logger.info("Delegated credential renewed; expires at %s", credential.expires_at.isoformat())
        return credential
