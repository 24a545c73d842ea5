from __future__ import annotations

import pytest

from blobstore.rate_limit import TokenBucketRateLimiter


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_bucket_allows_burst_then_waits_for_refill() -> None:
    clock = _Clock()
    slept: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        slept.append(seconds)
        clock.now += seconds

    limiter = TokenBucketRateLimiter(2, clock=clock, sleep=fake_sleep)

    await limiter.acquire()
    await limiter.acquire()
    assert slept == []

    await limiter.acquire()
    assert slept == [pytest.approx(0.5)]


def test_bucket_never_exceeds_capacity() -> None:
    clock = _Clock()
    limiter = TokenBucketRateLimiter(3, clock=clock)

    clock.now += 60.0
    assert limiter.wait_time() == 0.0
    assert limiter.tokens == 3.0


def test_rate_must_be_positive() -> None:
    with pytest.raises(ValueError):
        TokenBucketRateLimiter(0)
