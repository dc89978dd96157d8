import asyncio
import random

import pytest

from lotsync.services.sync import (ConnectivityError, DataError,
                                   RateLimitedError, RetryExhaustedError,
                                   RetryPolicy, TransientError)
from lotsync.services.sync.errors import ErrorCategory


def _policy(**kwargs) -> tuple[RetryPolicy, list[float]]:
    delays: list[float] = []

    async def record_sleep(seconds: float) -> None:
        delays.append(seconds)

    kwargs.setdefault("rng", random.Random(7))
    return RetryPolicy(sleep=record_sleep, **kwargs), delays


def test_transient_errors_are_retried_until_success() -> None:
    policy, delays = _policy(max_attempts=5, base_delay=1.0, max_delay=15.0)
    calls = 0

    async def flaky():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise TransientError("HTTP 503")
        return "ok"

    assert asyncio.run(policy.run(flaky)) == "ok"
    assert calls == 3
    assert len(delays) == 2
    # Exponential with jitter in [1 - jitter, 1] of the nominal delay.
    assert 0.5 <= delays[0] <= 1.0
    assert 1.0 <= delays[1] <= 2.0


def test_exhausted_attempts_raise_with_last_error() -> None:
    policy, delays = _policy(max_attempts=3, base_delay=0.1)

    async def always_fails():
        raise TransientError("timeout")

    with pytest.raises(RetryExhaustedError) as excinfo:
        asyncio.run(policy.run(always_fails, description="fetch page 4"))

    assert excinfo.value.attempts == 3
    assert excinfo.value.category == ErrorCategory.TRANSIENT
    assert "fetch page 4" in str(excinfo.value)
    assert len(delays) == 2


@pytest.mark.parametrize(
    "error",
    [ConnectivityError("HTTP 401"), DataError("bad body"), ValueError("nope")],
)
def test_non_transient_errors_are_not_retried(error) -> None:
    policy, delays = _policy(max_attempts=5)
    calls = 0

    async def fails():
        nonlocal calls
        calls += 1
        raise error

    with pytest.raises(type(error)):
        asyncio.run(policy.run(fails))
    assert calls == 1
    assert delays == []


def test_delay_is_capped_and_honours_retry_after() -> None:
    policy, _ = _policy(base_delay=1.0, max_delay=15.0, jitter=0.0)

    assert policy.delay_for(0) == 1.0
    assert policy.delay_for(3) == 8.0
    assert policy.delay_for(10) == 15.0
    assert policy.delay_for(0, RateLimitedError("429", retry_after=4.0)) == 4.0
    assert policy.delay_for(0, RateLimitedError("429", retry_after=120.0)) == 15.0


def test_on_retry_reports_attempt_numbers() -> None:
    policy, _ = _policy(max_attempts=3, base_delay=0.0)
    seen: list[int] = []
    calls = 0

    async def flaky():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise TransientError("busy")
        return calls

    asyncio.run(policy.run(flaky, on_retry=lambda attempt, _exc: seen.append(attempt)))
    assert seen == [1, 2]


def test_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(jitter=1.5)
