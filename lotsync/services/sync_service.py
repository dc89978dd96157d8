"""Trigger surface of the sync engine.

:class:`SyncService` is the only way to start or resume a run. It decides
whether a request starts a fresh run, resumes the latest one, or is refused
because an invocation is already active, and always answers with a
structured :class:`TriggerResponse`.
"""

from __future__ import annotations

import asyncio
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from lotsync.domain.models import SyncRun
from lotsync.domain.policies import seconds_since_activity
from lotsync.infrastructure.db import get_path_config
from lotsync.infrastructure.http import AuctionApiClient
from lotsync.infrastructure.observability import get_logger, log_context
from lotsync.services.dto import (EventPublisher, SyncErrorView, SyncRunView,
                                  TriggerRequest, TriggerResponse,
                                  noop_event_publisher)
from lotsync.services.sync import (InvocationResult, RunCoordinator,
                                   SqliteDestinationStore,
                                   SqliteProgressStore, SyncSettings,
                                   UpstreamSettings, WatchdogSettings)
from lotsync.services.sync.fetcher import Upstream
from lotsync.services.sync.stores import ProgressStore
from lotsync.services.sync.writer import Destination

UpstreamFactory = Callable[[], AbstractAsyncContextManager[Upstream]]


def api_client_factory(settings: UpstreamSettings, timeout_seconds: float) -> UpstreamFactory:
    """Build a factory that opens a fresh :class:`AuctionApiClient` per invocation."""

    def factory() -> AbstractAsyncContextManager[Upstream]:
        return AuctionApiClient(
            settings.base_url,
            api_key=settings.api_key,
            timeout_seconds=timeout_seconds,
            user_agent=settings.user_agent,
        )

    return factory


class SyncService:
    """Start, resume and inspect sync runs."""

    def __init__(
        self,
        *,
        progress: ProgressStore,
        destination: Destination,
        upstream_factory: UpstreamFactory,
        settings: SyncSettings | None = None,
        stall_threshold_seconds: float = WatchdogSettings.stall_threshold_seconds,
        event_publisher: EventPublisher | None = None,
    ) -> None:
        self.progress = progress
        self.destination = destination
        self.settings = settings or SyncSettings()
        self._upstream_factory = upstream_factory
        self._stall_threshold_seconds = stall_threshold_seconds
        self._event_publisher = event_publisher or noop_event_publisher
        self._lock = asyncio.Lock()
        self._stop_event: asyncio.Event | None = None
        self._logger = get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        cfg: Mapping[str, Any],
        *,
        db_path: str | Path | None = None,
        api_key: str | None = None,
        event_publisher: EventPublisher | None = None,
        **sync_overrides: Any,
    ) -> "SyncService":
        """Wire the SQLite stores and the API client from a config mapping."""
        resolved_db = Path(db_path) if db_path is not None else get_path_config()["db_path"]
        settings = SyncSettings.from_config(cfg).with_overrides(**sync_overrides)
        upstream = UpstreamSettings.from_config(cfg, api_key=api_key)
        watchdog = WatchdogSettings.from_config(cfg)
        return cls(
            progress=SqliteProgressStore.from_sqlite_path(resolved_db),
            destination=SqliteDestinationStore.from_sqlite_path(resolved_db),
            upstream_factory=api_client_factory(upstream, settings.request_timeout_seconds),
            settings=settings,
            stall_threshold_seconds=watchdog.stall_threshold_seconds,
            event_publisher=event_publisher,
        )

    @property
    def is_busy(self) -> bool:
        """True while this process runs an invocation."""
        return self._lock.locked()

    def stop(self) -> None:
        """Ask the active invocation to stop at the next page boundary."""
        if self._stop_event is not None:
            self._stop_event.set()

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    async def trigger(self, request: TriggerRequest | None = None) -> TriggerResponse:
        """Start a fresh run or resume the latest one."""
        request = request or TriggerRequest()
        if self._lock.locked():
            return self._refusal(None, "an invocation is already in progress in this process")

        async with self._lock:
            try:
                run, refusal = await self._prepare(request)
            except Exception as exc:
                self._logger.exception("Failed to load sync progress")
                return TriggerResponse(
                    success=False,
                    status="failed",
                    error=str(exc),
                    error_category="connectivity",
                    message="progress store unavailable",
                )
            if refusal is not None:
                return refusal
            if run.is_completed:
                self._logger.info("Run %s is already completed; nothing to resume", run.run_id)
                return self._response(InvocationResult(run=run, stop_reason="already_completed"))

            self._stop_event = asyncio.Event()
            try:
                with log_context(run_id=run.run_id, source=request.source):
                    result = await self._invoke(run, self._stop_event)
            except Exception as exc:
                self._logger.exception("Sync invocation could not start")
                return TriggerResponse(
                    success=False,
                    status=run.status.value,
                    run_id=run.run_id,
                    records_processed=run.records_processed,
                    current_page=run.current_page,
                    error=str(exc),
                    error_category="connectivity",
                )
            finally:
                self._stop_event = None
            return self._response(result)

    async def _invoke(self, run: SyncRun, stop_event: asyncio.Event) -> InvocationResult:
        async with self._upstream_factory() as upstream:
            coordinator = RunCoordinator(
                upstream,
                self.progress,
                self.destination,
                self.settings,
                event_publisher=self._event_publisher,
            )
            return await coordinator.run(run, stop_event=stop_event)

    async def _prepare(self, request: TriggerRequest) -> tuple[SyncRun | None, TriggerResponse | None]:
        if request.run_id:
            latest = await asyncio.to_thread(self.progress.get_progress, request.run_id)
            if latest is None:
                return None, TriggerResponse(
                    success=False, status="idle", message=f"unknown run {request.run_id}"
                )
        else:
            latest = await asyncio.to_thread(self.progress.get_latest)

        if latest is not None and self._is_active_elsewhere(latest):
            return None, self._refusal(
                latest, "run is actively advancing in another invocation"
            )

        if not request.resume or latest is None:
            if request.resume:
                self._logger.info("Nothing to resume; starting a fresh run")
            run = SyncRun.new(start_page=request.from_page or 1, source=request.source)
            self._logger.info("Starting fresh run %s at page %s", run.run_id, run.current_page)
            return run, None

        run = latest
        if run.is_completed:
            return run, None
        if request.from_page is not None:
            if request.from_page < run.current_page:
                self._logger.warning(
                    "Ignoring fromPage=%s below checkpoint %s; resuming from the checkpoint",
                    request.from_page,
                    run.current_page,
                )
            else:
                run.current_page = request.from_page
        if run.is_failed or run.has_yielded:
            run.resume_count += 1
        run.source = request.source
        self._logger.info(
            "Resuming run %s from page %s (status=%s, processed=%s)",
            run.run_id,
            run.current_page,
            run.status.value,
            run.records_processed,
        )
        return run, None

    def _is_active_elsewhere(self, run: SyncRun) -> bool:
        """A running run that has not yielded and moved recently belongs to someone else."""
        if not run.is_running or run.has_yielded:
            return False
        elapsed = seconds_since_activity(run, datetime.now(timezone.utc))
        return elapsed is not None and elapsed <= self._stall_threshold_seconds

    def _refusal(self, run: SyncRun | None, message: str) -> TriggerResponse:
        self._logger.warning("Trigger refused: %s", message)
        return TriggerResponse(
            success=False,
            status=run.status.value if run else "running",
            run_id=run.run_id if run else None,
            records_processed=run.records_processed if run else 0,
            current_page=run.current_page if run else None,
            message=message,
        )

    @staticmethod
    def _response(result: InvocationResult) -> TriggerResponse:
        run = result.run
        return TriggerResponse(
            success=result.error is None,
            status=run.status.value,
            run_id=run.run_id,
            records_processed=run.records_processed,
            current_page=run.current_page,
            should_continue=result.should_continue,
            progress_percent=run.progress_percent,
            expected_total=run.expected_total,
            records_written=result.records_written,
            records_unchanged=result.records_unchanged,
            records_skipped=result.records_skipped,
            pages_processed=result.pages_processed,
            error_count=run.error_count,
            error=result.error,
            error_category=result.error_category.value if result.error_category else None,
            completion_reason=result.completion_reason.value if result.completion_reason else None,
            message=result.stop_reason,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self, *, error_limit: int = 10) -> dict[str, Any]:
        """Latest run and its most recent errors, for the CLI."""
        run = self.progress.get_latest()
        if run is None:
            return {"run": None, "errors": []}
        view = SyncRunView(progress_percent=run.progress_percent, **run.to_dict())
        errors = [SyncErrorView(**row) for row in self.progress.list_errors(run.run_id, error_limit)]
        return {"run": view, "errors": errors}
