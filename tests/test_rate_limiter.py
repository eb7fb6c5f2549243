from __future__ import annotations

import asyncio

import pytest

from fakes import FakeClock
from services.rate_limiter import TokenBucket


def test_try_acquire_drains_capacity():
    clock = FakeClock()
    bucket = TokenBucket(capacity=2, refill_rate=1.0, clock=clock, sleep=clock.sleep)

    assert bucket.try_acquire()
    assert bucket.try_acquire()
    assert not bucket.try_acquire()


def test_tokens_refill_over_time_up_to_capacity():
    clock = FakeClock()
    bucket = TokenBucket(capacity=3, refill_rate=2.0, clock=clock, sleep=clock.sleep)
    for _ in range(3):
        bucket.try_acquire()

    clock.now += 1.0
    assert bucket.tokens == pytest.approx(2.0)

    clock.now += 10.0
    assert bucket.tokens == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_acquire_waits_for_refill():
    clock = FakeClock()
    bucket = TokenBucket(capacity=1, refill_rate=0.5, clock=clock, sleep=clock.sleep)

    await bucket.acquire()
    await bucket.acquire()

    assert clock.sleeps == [pytest.approx(2.0)]
    assert clock.now == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_concurrent_callers_never_exceed_rate():
    clock = FakeClock()
    bucket = TokenBucket(capacity=2, refill_rate=1.0, clock=clock, sleep=clock.sleep)
    acquired_at = []

    async def caller():
        await bucket.acquire()
        acquired_at.append(clock.now)

    await asyncio.gather(*(caller() for _ in range(5)))

    assert len(acquired_at) == 5
    # two from the initial burst, then one per second
    assert acquired_at == [pytest.approx(t) for t in (0.0, 0.0, 1.0, 2.0, 3.0)]


@pytest.mark.asyncio
async def test_acquire_more_than_capacity_raises():
    bucket = TokenBucket(capacity=2, refill_rate=1.0)
    with pytest.raises(ValueError):
        await bucket.acquire(3)


def test_invalid_configuration():
    with pytest.raises(ValueError):
        TokenBucket(capacity=0, refill_rate=1.0)
    with pytest.raises(ValueError):
        TokenBucket(capacity=1, refill_rate=0)
