import asyncio

import pytest

from lotsync.services.sync import TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_burst_is_available_immediately() -> None:
    clock = FakeClock()
    bucket = TokenBucket(2.0, 5, clock=clock, sleep=clock.sleep)

    async def take_burst():
        for _ in range(5):
            await bucket.acquire()

    asyncio.run(take_burst())
    assert clock.sleeps == []
    assert bucket.available == pytest.approx(0.0)


def test_acquire_waits_for_refill_at_configured_rate() -> None:
    clock = FakeClock()
    bucket = TokenBucket(2.0, 1, clock=clock, sleep=clock.sleep)

    async def take(n):
        for _ in range(n):
            await bucket.acquire()

    asyncio.run(take(5))
    # One token up front, then one every 0.5s.
    assert clock.now == pytest.approx(2.0)


def test_rate_bound_holds_over_a_window() -> None:
    clock = FakeClock()
    bucket = TokenBucket(4.0, 4, clock=clock, sleep=clock.sleep)
    grants: list[float] = []

    async def worker():
        for _ in range(10):
            await bucket.acquire()
            grants.append(clock.now)

    async def main():
        await asyncio.gather(worker(), worker(), worker())

    asyncio.run(main())
    assert len(grants) == 30
    # Within any window of length T at most burst + rate * T grants happen.
    for start in grants:
        in_window = [g for g in grants if start <= g <= start + 1.0]
        assert len(in_window) <= 4 + 4 * 1.0 + 1e-9


def test_try_acquire_does_not_wait() -> None:
    clock = FakeClock()
    bucket = TokenBucket(1.0, 2, clock=clock, sleep=clock.sleep)

    assert bucket.try_acquire()
    assert bucket.try_acquire()
    assert not bucket.try_acquire()
    clock.now += 1.0
    assert bucket.try_acquire()


def test_invalid_arguments_are_rejected() -> None:
    with pytest.raises(ValueError):
        TokenBucket(0, 1)
    with pytest.raises(ValueError):
        TokenBucket(1.0, 0)

    bucket = TokenBucket(1.0, 2)
    with pytest.raises(ValueError):
        bucket.try_acquire(3)
