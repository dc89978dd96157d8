"""Run coordinator: drives one invocation of a sync run.

The coordinator owns the :class:`SyncRun` checkpoint. It keeps up to K page
fetches in flight, processes their results strictly in page order, hands
changed records to the batch writer and advances ``current_page`` only after
every batch of that page and of all earlier pages has been confirmed. The
checkpoint is persisted after every advance, so a crash loses at most the
pages that were not yet confirmed.

An invocation ends when the run completes, fails, is cancelled, or its time
budget is about to run out. In the last two cases the run stays ``running``
and the caller is told to invoke again.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from lotsync.domain.models import (MalformedRecordError, SyncRun, SyncStatus,
                                   VehicleRecord)
from lotsync.domain.policies import CompletionPolicy, CompletionReason
from lotsync.infrastructure.db import iso_utcnow
from lotsync.infrastructure.observability import (get_logger, log_context,
                                                  log_exception,
                                                  record_page_records,
                                                  record_sync_error,
                                                  record_sync_run, trace_span)
from lotsync.services.dto import EventPublisher, noop_event_publisher

from .errors import (PAST_END_STATUSES, ConnectivityError, ErrorCategory,
                     FatalSyncError, SyncError, classify_error)
from .fetcher import PageFetcher, PageResult, Upstream
from .fingerprint import ChangeDetector
from .rate_limiter import TokenBucket
from .retry import RetryExhaustedError, RetryPolicy
from .settings import SyncSettings
from .stores import ProgressStore
from .writer import BatchWriter, Destination, PageWrite

logger = get_logger(__name__)


@dataclass
class InvocationResult:
    """What one coordinator invocation achieved."""

    run: SyncRun
    should_continue: bool = False
    completion_reason: CompletionReason | None = None
    pages_processed: int = 0
    records_written: int = 0
    records_unchanged: int = 0
    records_skipped: int = 0
    stop_reason: str | None = None
    error: str | None = None
    error_category: ErrorCategory | None = None
    elapsed: float = 0.0

    @property
    def status(self) -> SyncStatus:
        return self.run.status


@dataclass
class _PendingPage:
    """A page whose fetch was processed but whose writes may still be running."""

    page: int
    fetched: bool
    empty: bool = False
    write: PageWrite | None = None
    unchanged: int = 0
    skipped: int = 0
    total: int | None = None
    error: str | None = None
    error_category: ErrorCategory | None = None

    def done(self) -> bool:
        return self.write is None or self.write.done()


@dataclass
class _Counters:
    pages: int = 0
    written: int = 0
    unchanged: int = 0
    skipped: int = 0
    reason: CompletionReason | None = None
    fetched: bool = False
    aborted: SyncError | None = None
    pending: deque = field(default_factory=deque)


class RunCoordinator:
    """Process pages for a :class:`SyncRun` until a stop condition holds."""

    def __init__(
        self,
        upstream: Upstream,
        progress: ProgressStore,
        destination: Destination,
        settings: SyncSettings | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        rate_limiter: TokenBucket | None = None,
        change_detector: ChangeDetector | None = None,
        event_publisher: EventPublisher = noop_event_publisher,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or SyncSettings()
        self.upstream = upstream
        self.progress = progress
        self.destination = destination
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.max_attempts,
            base_delay=self.settings.backoff_base_seconds,
            max_delay=self.settings.backoff_max_seconds,
        )
        self._rate_limiter_override = rate_limiter
        self.change_detector = change_detector or ChangeDetector()
        self.completion = CompletionPolicy(
            empty_page_threshold=self.settings.empty_page_threshold,
            watermark=self.settings.completion_watermark,
            max_pages=self.settings.max_pages,
        )
        self._event_publisher = event_publisher
        self._clock = clock

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(
        self, run: SyncRun, *, stop_event: asyncio.Event | None = None
    ) -> InvocationResult:
        """Run one invocation for ``run`` and return its outcome.

        Expected failures never raise; they are reflected in the returned
        run's status and in the result's ``error`` fields.
        """
        started = self._clock()
        deadline = started + max(
            0.0, self.settings.invocation_budget_seconds - self.settings.budget_margin_seconds
        )
        stop_event = stop_event or asyncio.Event()

        with log_context(run_id=run.run_id), trace_span("sync.invocation", run_id=run.run_id):
            if run.is_completed:
                logger.info("Run already completed; nothing to do")
                return InvocationResult(run=run, stop_reason="already_completed")

            self._writer = self._make_writer()
            self._rate_limiter = self._rate_limiter_override or TokenBucket(
                self.settings.rate_per_second, self.settings.burst
            )
            counters = _Counters()
            try:
                await self._begin(run)
                stop_reason = await self._loop(run, counters, deadline, stop_event)
            except SyncError as exc:
                counters.aborted = exc
                stop_reason = "aborted"
            except Exception as exc:
                log_exception(logger, "Sync invocation crashed", exc)
                counters.aborted = SyncError(
                    str(exc) or type(exc).__name__, category=classify_error(exc)
                )
                stop_reason = "aborted"
            finally:
                await self._wind_down(run, counters)

            result = await self._finish(run, counters, stop_reason)
            result.elapsed = self._clock() - started
            record_sync_run(run.status.value, result.elapsed, result.records_written)
            logger.info(
                "Invocation finished: status=%s page=%s processed=%s written=%s "
                "unchanged=%s skipped=%s continue=%s",
                run.status.value,
                run.current_page,
                run.records_processed,
                result.records_written,
                result.records_unchanged,
                result.records_skipped,
                result.should_continue,
            )
            return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _begin(self, run: SyncRun) -> None:
        now = iso_utcnow()
        if run.is_failed and run.last_error_category == ErrorCategory.FATAL.value:
            logger.warning(
                "Resetting error counter from %s after fatal failure", run.error_count
            )
            run.error_count = 0
        run.status = SyncStatus.RUNNING
        run.started_at = run.started_at or now
        run.last_activity_at = now
        run.finished_at = None
        run.yielded_at = None
        run.last_error = None
        run.last_error_category = None
        await self._persist(run)

        total = await self._fetch_total()
        if total is not None and total != run.expected_total:
            run.expected_total = total
            await self._persist(run)

        logger.info(
            "Starting invocation at page %s (processed=%s, expected_total=%s)",
            run.current_page,
            run.records_processed,
            run.expected_total,
        )
        await self._publish_event(
            {"type": "sync_run_started", "time": now, "run": run.to_dict()}
        )

    async def _fetch_total(self) -> int | None:
        try:
            return await asyncio.wait_for(
                self.upstream.fetch_total(), timeout=self.settings.request_timeout_seconds
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Could not fetch upstream total: %s", exc)
            return None

    async def _wind_down(self, run: SyncRun, counters: _Counters) -> None:
        """Drain in-flight writes and checkpoint every page they complete."""
        await self._writer.drain()
        try:
            await self._advance(run, counters, final=True)
        except SyncError as exc:
            counters.aborted = counters.aborted or exc
        except Exception as exc:
            log_exception(logger, "Failed to checkpoint drained pages", exc)
            counters.aborted = counters.aborted or SyncError(str(exc), category=classify_error(exc))

    async def _finish(
        self, run: SyncRun, counters: _Counters, stop_reason: str
    ) -> InvocationResult:
        now = iso_utcnow()
        result = InvocationResult(
            run=run,
            completion_reason=counters.reason,
            pages_processed=counters.pages,
            records_written=counters.written,
            records_unchanged=counters.unchanged,
            records_skipped=counters.skipped,
            stop_reason=stop_reason,
        )

        if counters.aborted is not None:
            abort = counters.aborted
            run.status = SyncStatus.FAILED
            run.finished_at = now
            run.last_error = str(abort)
            run.last_error_category = abort.category.value
            if abort.category == ErrorCategory.CONNECTIVITY:
                run.connectivity_failures += 1
            result.error = str(abort)
            result.error_category = abort.category
            record_sync_error(abort.category.value, "run")
            logger.error("Run failed [%s]: %s", abort.category.value, abort)
        elif counters.reason is not None:
            run.status = SyncStatus.COMPLETED
            run.finished_at = now
            if counters.reason == CompletionReason.PAGE_LIMIT:
                logger.warning(
                    "Page ceiling %s reached while pages still had listings", self.settings.max_pages
                )
            logger.info("Run completed (%s)", counters.reason.value)
        else:
            run.yielded_at = now
            result.should_continue = True
            logger.info("Yielding at page %s (%s); next invocation continues", run.current_page, stop_reason)

        try:
            await self._persist(run)
        except Exception as exc:
            log_exception(logger, "Failed to persist final checkpoint", exc)
            if result.error is None:
                result.error = f"checkpoint not persisted: {exc}"
                result.error_category = classify_error(exc)

        await self._publish_event(
            {
                "type": "sync_run_finished",
                "time": now,
                "status": run.status.value,
                "should_continue": result.should_continue,
                "completion_reason": counters.reason.value if counters.reason else None,
                "run": run.to_dict(),
            }
        )
        return result

    # ------------------------------------------------------------------
    # Page loop
    # ------------------------------------------------------------------

    async def _loop(
        self,
        run: SyncRun,
        counters: _Counters,
        deadline: float,
        stop_event: asyncio.Event,
    ) -> str:
        fetcher = PageFetcher(
            self.upstream,
            self._rate_limiter,
            self.retry_policy,
            max_concurrency=self.settings.max_concurrency,
            page_size=self.settings.page_size,
        )
        fetches: deque[tuple[int, asyncio.Task]] = deque()
        next_page = run.current_page
        stop_waiter = asyncio.create_task(stop_event.wait())
        try:
            while True:
                if stop_event.is_set():
                    return "cancelled"
                if self._clock() >= deadline:
                    return "budget"

                while (
                    len(fetches) < self.settings.max_concurrency
                    and next_page <= self.settings.max_pages
                ):
                    fetches.append((next_page, asyncio.create_task(fetcher.fetch(next_page))))
                    next_page += 1
                if not fetches and not counters.pending:
                    counters.reason = CompletionReason.PAGE_LIMIT
                    return "completed"

                page, task = fetches[0] if fetches else (None, None)
                waiters = {stop_waiter}
                if task is not None:
                    waiters.add(task)
                if counters.pending and counters.pending[0].write is not None:
                    waiters.update(t for t in counters.pending[0].write.tasks if not t.done())
                remaining = max(0.0, deadline - self._clock())
                await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)

                if task is not None and task.done():
                    fetches.popleft()
                    with log_context(page=page), trace_span("sync.page", page=page):
                        await self._process(run, counters, task.result())
                await self._advance(run, counters)
                if counters.reason is not None:
                    return "completed"
        finally:
            stop_waiter.cancel()
            for _, task in fetches:
                task.cancel()
            if fetches:
                await asyncio.gather(*(t for _, t in fetches), return_exceptions=True)

    async def _process(self, run: SyncRun, counters: _Counters, result: PageResult) -> None:
        page = result.page
        if not result.ok:
            if result.status in PAST_END_STATUSES and (counters.fetched or run.current_page > 1):
                logger.info("Page %s answered HTTP %s; counting it as empty", page, result.status)
                counters.pending.append(_PendingPage(page=page, fetched=True, empty=True))
                return
            if result.error_category == ErrorCategory.CONNECTIVITY:
                raise ConnectivityError(f"page {page}: {result.error}", status=result.status)
            counters.pending.append(
                _PendingPage(
                    page=page,
                    fetched=False,
                    error=result.error,
                    error_category=result.error_category,
                )
            )
            return

        counters.fetched = True
        if result.is_empty:
            counters.pending.append(_PendingPage(page=page, fetched=True, empty=True, total=result.total))
            return

        records: list[VehicleRecord] = []
        skipped = 0
        for raw in result.records:
            try:
                records.append(VehicleRecord.from_upstream(raw))
            except MalformedRecordError as exc:
                skipped += 1
                await self._skip_record(run, page, str(exc), exc.external_id)
            except Exception as exc:
                skipped += 1
                external_id = raw.get("id") if isinstance(raw, dict) else None
                await self._skip_record(
                    run,
                    page,
                    f"{type(exc).__name__}: {exc}",
                    str(external_id) if external_id is not None else None,
                )

        existing: dict[str, str] = {}
        if records:
            ids = [r.external_id for r in records]
            try:
                existing = await self.retry_policy.run(
                    lambda: asyncio.to_thread(self.destination.get_fingerprints, ids),
                    description=f"fingerprint lookup page {page}",
                )
            except RetryExhaustedError as exc:
                if exc.category == ErrorCategory.CONNECTIVITY:
                    raise ConnectivityError(str(exc)) from exc
                counters.pending.append(
                    _PendingPage(
                        page=page,
                        fetched=False,
                        error=str(exc),
                        error_category=exc.category,
                        skipped=skipped,
                    )
                )
                return
            except Exception as exc:
                category = classify_error(exc)
                if category == ErrorCategory.CONNECTIVITY:
                    raise ConnectivityError(f"fingerprint lookup page {page}: {exc}") from exc
                raise

        changed, unchanged = self.change_detector.filter_changed(records, existing)
        write = await self._writer.submit(page, changed) if changed else None
        counters.pending.append(
            _PendingPage(
                page=page,
                fetched=True,
                write=write,
                unchanged=unchanged,
                skipped=skipped,
                total=result.total,
            )
        )

    async def _advance(self, run: SyncRun, counters: _Counters, *, final: bool = False) -> None:
        """Checkpoint every leading page whose writes are all confirmed."""
        pending = counters.pending
        while pending and pending[0].done():
            entry: _PendingPage = pending.popleft()
            failed_writes = entry.write.failures if entry.write is not None else []
            written = entry.write.written if entry.write is not None else 0

            for failure in failed_writes:
                if failure.error_category == ErrorCategory.CONNECTIVITY:
                    pending.clear()
                    raise ConnectivityError(
                        f"page {entry.page}: destination unreachable: {failure.error}"
                    )

            page_failed = not entry.fetched or bool(failed_writes)
            if page_failed:
                message = entry.error or "; ".join(
                    f"batch {f.index} ({f.size} records): {f.error}" for f in failed_writes
                )
                category = entry.error_category or (
                    failed_writes[0].error_category if failed_writes else ErrorCategory.TRANSIENT
                )
                run.error_count += 1
                logger.error(
                    "Page %s failed [%s] (error_count=%s): %s",
                    entry.page,
                    category.value if category else "unknown",
                    run.error_count,
                    message,
                )
                record_sync_error(
                    category.value if category else "unknown",
                    "fetch" if not entry.fetched else "write",
                )
                await self._record_error(run, category or ErrorCategory.TRANSIENT, message, page=entry.page)
            elif entry.empty:
                run.consecutive_empty_pages += 1
            else:
                run.consecutive_empty_pages = 0

            if entry.fetched:
                run.connectivity_failures = 0
            if entry.total is not None and entry.total > 0:
                run.expected_total = entry.total

            run.records_processed += written
            run.records_unchanged += entry.unchanged
            run.records_skipped += entry.skipped
            run.current_page = max(run.current_page, entry.page + 1)
            run.last_activity_at = iso_utcnow()

            counters.pages += 1
            counters.written += written
            counters.unchanged += entry.unchanged
            counters.skipped += entry.skipped
            record_page_records(written, entry.unchanged, entry.skipped)

            if counters.reason is None:
                counters.reason = self.completion.evaluate(run)

            await self._persist(run)
            await self._publish_event(
                {
                    "type": "sync_page",
                    "time": run.last_activity_at,
                    "run_id": run.run_id,
                    "page": entry.page,
                    "status": "failed" if page_failed else ("empty" if entry.empty else "ok"),
                    "records_written": written,
                    "records_unchanged": entry.unchanged,
                    "records_skipped": entry.skipped,
                    "records_processed": run.records_processed,
                    "current_page": run.current_page,
                    "consecutive_empty_pages": run.consecutive_empty_pages,
                    "progress_percent": run.progress_percent,
                }
            )

            if run.error_count >= self.settings.max_error_count:
                pending.clear()
                raise FatalSyncError(f"error ceiling reached ({run.error_count} failed pages)")
            if counters.reason is not None and not final:
                return

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _make_writer(self) -> BatchWriter:
        return BatchWriter(
            self.destination,
            self.retry_policy,
            batch_size=self.settings.batch_size,
            max_in_flight=self.settings.max_in_flight_batches,
        )

    async def _persist(self, run: SyncRun) -> None:
        snapshot = SyncRun.from_dict(run.to_dict())
        await self.retry_policy.run(
            lambda: asyncio.to_thread(self.progress.save_progress, snapshot),
            description="save checkpoint",
        )

    async def _skip_record(
        self, run: SyncRun, page: int, message: str, external_id: str | None
    ) -> None:
        logger.warning("Skipping malformed record on page %s: %s", page, message)
        record_sync_error(ErrorCategory.DATA.value, "transform")
        await self._record_error(
            run, ErrorCategory.DATA, message, page=page, external_id=external_id
        )

    async def _record_error(
        self,
        run: SyncRun,
        category: ErrorCategory,
        message: str,
        *,
        page: int | None = None,
        external_id: str | None = None,
    ) -> None:
        try:
            await asyncio.to_thread(
                self.progress.record_error,
                run.run_id,
                category.value,
                message,
                page=page,
                external_id=external_id,
            )
        except Exception as exc:
            log_exception(logger, "Failed to record sync error", exc, page=page)

    async def _publish_event(self, payload: dict) -> None:
        try:
            await self._event_publisher(payload)
        except Exception:
            logger.exception("Failed to publish sync event")
