"""Bounded retries with jittered exponential backoff.

One :class:`RetryPolicy` is shared by the page fetcher and the batch writer so
both honour the same attempt limit and delay curve.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from lotsync.infrastructure.observability import get_logger

from .errors import TransientError, classify_error, is_retryable

logger = get_logger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """All attempts failed; ``last_error`` is the final underlying exception."""

    def __init__(self, description: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{description} failed after {attempts} attempt(s): {last_error}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        self.category = classify_error(last_error)


@dataclass
class RetryPolicy:
    """Retry transient failures up to ``max_attempts`` times.

    The delay before retry ``n`` (0-based) is ``base_delay * 2**n`` capped at
    ``max_delay`` and scaled by a random factor in ``[1 - jitter, 1]``. A
    server supplied ``retry_after`` replaces the computed delay (still capped).
    Errors that are not transient are raised immediately.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 15.0
    jitter: float = 0.5
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Delay before the retry that follows failed attempt ``attempt`` (0-based)."""
        retry_after = getattr(error, "retry_after", None) if isinstance(error, TransientError) else None
        if retry_after is not None and retry_after >= 0:
            return min(self.max_delay, float(retry_after))
        delay = min(self.max_delay, self.base_delay * (2**attempt))
        if self.jitter:
            delay *= 1.0 - self.jitter * self.rng.random()
        return delay

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Await ``fn()`` until it succeeds or the attempts run out.

        Raises:
            RetryExhaustedError: when every attempt failed with a transient error.
            Exception: any non-transient error, unchanged, on first occurrence.
        """
        for attempt in range(self.max_attempts):
            try:
                return await fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                if attempt >= self.max_attempts - 1:
                    raise RetryExhaustedError(description, attempt + 1, exc) from exc
                delay = self.delay_for(attempt, exc)
                logger.warning(
                    "%s failed (attempt %s/%s): %s; retrying in %.2fs",
                    description,
                    attempt + 1,
                    self.max_attempts,
                    exc,
                    delay,
                )
                if on_retry is not None:
                    on_retry(attempt + 1, exc)
                await self.sleep(delay)
        raise AssertionError("unreachable")
