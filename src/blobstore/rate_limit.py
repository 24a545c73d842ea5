"""Rate limiting for outbound blob-store requests.

Keeps a single writer from bursting past the store's per-account request
limits when a long backlog is split into many append blocks.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable


class TokenBucketRateLimiter:
    """A token bucket refilled at `rate` tokens per second, holding at most `rate`.

    `acquire()` consumes one token, sleeping until one has accrued when the
    bucket is empty. The clock and sleep are injectable for tests.
    """

    def __init__(
        self,
        rate: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        if rate <= 0:
            raise ValueError(f"rate must be > 0. Got: {rate}")

        self.rate: float = float(rate)
        self.capacity: float = float(rate)
        self.tokens: float = float(rate)
        self._clock = clock
        self._sleep = sleep
        self._refilled_at: float = clock()

    def _refill(self) -> None:
        now = self._clock()
        self.tokens = min(self.capacity, self.tokens + (now - self._refilled_at) * self.rate)
        self._refilled_at = now

    def wait_time(self) -> float:
        """Seconds until a token is available (0 when one is ready)."""
        self._refill()
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) / self.rate

    async def acquire(self) -> None:
        """Wait until at least one token is available, then consume it."""
        sleep = self._sleep or asyncio.sleep
        while True:
            delay = self.wait_time()
            if delay == 0.0:
                self.tokens -= 1.0
                return
            await sleep(delay)
