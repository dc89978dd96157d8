"""Fetch worker pool: rate limited, bounded-concurrency page downloads.

Every outbound request attempt takes one token from the shared
:class:`TokenBucket`; at most ``max_concurrency`` pages are in flight. Failed
attempts are retried by the shared :class:`RetryPolicy`, and a page whose
attempts are exhausted comes back as a failed :class:`PageResult` instead of
raising. Workers never touch the progress store.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from lotsync.infrastructure.observability import get_logger, record_page_fetch

from .errors import ErrorCategory, classify_error
from .rate_limiter import TokenBucket
from .retry import RetryExhaustedError, RetryPolicy

logger = get_logger(__name__)


class UpstreamPageLike(Protocol):
    records: list[dict[str, Any]]
    has_more: bool
    total: int | None


class Upstream(Protocol):
    """What the engine needs from the remote API."""

    async def fetch_page(self, page: int, page_size: int) -> UpstreamPageLike: ...

    async def fetch_total(self) -> int | None: ...


@dataclass
class PageResult:
    """Outcome of fetching one page."""

    page: int
    records: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    total: int | None = None
    attempts: int = 0
    elapsed: float = 0.0
    error: str | None = None
    error_category: ErrorCategory | None = None
    status: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_empty(self) -> bool:
        return self.ok and not self.records


class PageFetcher:
    """Fetch pages through the rate limiter with bounded concurrency."""

    def __init__(
        self,
        client: Upstream,
        rate_limiter: TokenBucket,
        retry_policy: RetryPolicy,
        *,
        max_concurrency: int = 3,
        page_size: int = 100,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.client = client
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy
        self.max_concurrency = max_concurrency
        self.page_size = page_size
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def fetch(self, page: int) -> PageResult:
        async with self._semaphore:
            return await self._fetch(page)

    async def _fetch(self, page: int) -> PageResult:
        attempts = 0

        async def attempt():
            nonlocal attempts
            await self.rate_limiter.acquire()
            attempts += 1
            return await self.client.fetch_page(page, self.page_size)

        start = time.perf_counter()
        try:
            upstream = await self.retry_policy.run(attempt, description=f"fetch page {page}")
        except RetryExhaustedError as exc:
            result = PageResult(
                page=page,
                attempts=attempts,
                error=str(exc.last_error),
                error_category=exc.category,
                status=getattr(exc.last_error, "status", None),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            result = PageResult(
                page=page,
                attempts=attempts,
                error=str(exc) or type(exc).__name__,
                error_category=classify_error(exc),
                status=getattr(exc, "status", None),
            )
        else:
            result = PageResult(
                page=page,
                records=list(upstream.records),
                has_more=bool(upstream.has_more),
                total=upstream.total,
                attempts=attempts,
            )
        result.elapsed = time.perf_counter() - start

        if result.ok:
            outcome = "empty" if result.is_empty else "ok"
            logger.debug(
                "Fetched page %s: %s records in %.2fs (%s attempt(s))",
                page,
                len(result.records),
                result.elapsed,
                attempts,
            )
        else:
            outcome = "failed"
            logger.warning(
                "Page %s failed after %s attempt(s) [%s]: %s",
                page,
                attempts,
                result.error_category.value if result.error_category else "unknown",
                result.error,
            )
        record_page_fetch(outcome, attempts, result.elapsed)
        return result
