"""Batch writer: bounded, concurrent, idempotent upserts."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from lotsync.domain.models import VehicleRecord
from lotsync.infrastructure.observability import get_logger, record_batch

from .errors import ErrorCategory, classify_error
from .retry import RetryExhaustedError, RetryPolicy

logger = get_logger(__name__)


class Destination(Protocol):
    """Blocking destination store; calls are offloaded to worker threads."""

    def upsert_batch(self, records: Sequence[VehicleRecord]) -> int: ...

    def get_fingerprints(self, external_ids: Sequence[str]) -> dict[str, str]: ...


@dataclass
class BatchOutcome:
    page: int
    index: int
    size: int
    written: int = 0
    attempts: int = 0
    error: str | None = None
    error_category: ErrorCategory | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PageWrite:
    """Handle on every batch submitted for one page."""

    page: int
    tasks: list[asyncio.Task] = field(default_factory=list)

    def done(self) -> bool:
        return all(task.done() for task in self.tasks)

    async def wait(self) -> list[BatchOutcome]:
        if not self.tasks:
            return []
        return list(await asyncio.gather(*self.tasks))

    def outcomes(self) -> list[BatchOutcome]:
        """Outcomes of finished batches, in submission order."""
        return [task.result() for task in self.tasks if task.done() and not task.cancelled()]

    @property
    def written(self) -> int:
        return sum(o.written for o in self.outcomes())

    @property
    def failures(self) -> list[BatchOutcome]:
        return [o for o in self.outcomes() if not o.ok]


class BatchWriter:
    """Split records into batches and upsert them with at most W in flight.

    :meth:`submit` waits for a free slot before scheduling each batch, so a
    slow destination pushes back on the coordinator instead of piling up
    memory. Batches of different pages may finish in any order.
    """

    def __init__(
        self,
        destination: Destination,
        retry_policy: RetryPolicy,
        *,
        batch_size: int = 500,
        max_in_flight: int = 3,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        self.destination = destination
        self.retry_policy = retry_policy
        self.batch_size = batch_size
        self.max_in_flight = max_in_flight
        self._slots = asyncio.Semaphore(max_in_flight)
        self._pending: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    async def submit(self, page: int, records: Sequence[VehicleRecord]) -> PageWrite:
        handle = PageWrite(page=page)
        for index, start in enumerate(range(0, len(records), self.batch_size)):
            batch = list(records[start:start + self.batch_size])
            await self._slots.acquire()
            try:
                task = asyncio.create_task(self._write(page, index, batch))
            except BaseException:
                self._slots.release()
                raise
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            handle.tasks.append(task)
        return handle

    async def drain(self) -> None:
        """Wait for every batch that is still in flight."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _write(self, page: int, index: int, batch: list[VehicleRecord]) -> BatchOutcome:
        outcome = BatchOutcome(page=page, index=index, size=len(batch))

        def on_retry(attempt: int, _exc: BaseException) -> None:
            outcome.attempts = attempt

        start = time.perf_counter()
        try:
            outcome.written = await self.retry_policy.run(
                lambda: asyncio.to_thread(self.destination.upsert_batch, batch),
                description=f"write page {page} batch {index}",
                on_retry=on_retry,
            )
            outcome.attempts += 1
        except RetryExhaustedError as exc:
            outcome.attempts = exc.attempts
            outcome.error = str(exc.last_error)
            outcome.error_category = exc.category
        except Exception as exc:
            outcome.attempts += 1
            outcome.error = str(exc) or type(exc).__name__
            outcome.error_category = classify_error(exc)
        finally:
            self._slots.release()

        duration = time.perf_counter() - start
        record_batch("ok" if outcome.ok else "failed", outcome.size, duration)
        if not outcome.ok:
            logger.error(
                "Batch %s of page %s (%s records) failed [%s]: %s",
                index,
                page,
                outcome.size,
                outcome.error_category.value if outcome.error_category else "unknown",
                outcome.error,
            )
        return outcome
