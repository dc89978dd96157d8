"""Watchdog that keeps a sync run moving.

Every ``interval_seconds`` the watchdog reads the latest run and applies the
restart rules:

* a ``failed`` run is resumed from its checkpoint once it has been idle for
  its grace period (shorter while progress is still low, longer after
  connectivity failures, and not at all after too many of those in a row);
* a ``running`` run that stopped advancing for longer than the stall
  threshold is flipped to ``failed`` and then handled as above;
* a ``running`` run whose last invocation yielded is resumed right away.

It never resumes while its own resume task is active or while the run is
still advancing.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol

from lotsync.domain.models import SyncRun, SyncStatus
from lotsync.domain.policies import (is_connectivity_failure, is_stalled,
                                     resume_delay, seconds_since_activity,
                                     should_resume)
from lotsync.infrastructure.db import iso_utcnow
from lotsync.infrastructure.observability import (get_logger,
                                                  get_metrics_summary,
                                                  log_context,
                                                  record_watchdog_action)
from lotsync.services.dto import (EventPublisher, TriggerRequest,
                                  TriggerResponse, noop_event_publisher)

from .settings import WatchdogSettings
from .stores import ProgressStore

logger = get_logger(__name__)

Now = Callable[[], datetime]


class Trigger(Protocol):
    @property
    def is_busy(self) -> bool: ...

    async def trigger(self, request: TriggerRequest | None = None) -> TriggerResponse: ...


@dataclass(frozen=True)
class WatchdogDecision:
    """What one tick decided; ``action`` is one of none, wait, busy, resume,
    mark_failed, mark_failed_and_resume or give_up."""

    action: str
    run_id: str | None = None
    reason: str = ""
    run: SyncRun | None = field(default=None, compare=False, repr=False)

    @property
    def resumed(self) -> bool:
        return self.action in ("resume", "mark_failed_and_resume")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Watchdog:
    """Periodic stall detector and auto-resumer."""

    def __init__(
        self,
        progress: ProgressStore,
        trigger: Trigger,
        settings: WatchdogSettings | None = None,
        *,
        event_publisher: EventPublisher = noop_event_publisher,
        now: Now = _utcnow,
    ) -> None:
        self.progress = progress
        self.trigger = trigger
        self.settings = settings or WatchdogSettings()
        self._event_publisher = event_publisher
        self._now = now
        self._resume_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._given_up: tuple[str, int] | None = None
        self.last_response: TriggerResponse | None = None

    @property
    def resume_in_progress(self) -> bool:
        return self._resume_task is not None and not self._resume_task.done()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        """Tick until :meth:`stop` is called."""
        logger.info(
            "Watchdog started (interval=%ss, stall threshold=%ss)",
            self.settings.interval_seconds,
            self.settings.stall_threshold_seconds,
        )
        self._stop_event.clear()
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Watchdog tick failed")
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self.settings.interval_seconds
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            await self._wait_for_resume()
            logger.info("Watchdog stopped")

    def stop(self) -> None:
        self._stop_event.set()

    async def _wait_for_resume(self) -> None:
        if self._resume_task is not None:
            await asyncio.gather(self._resume_task, return_exceptions=True)

    # ------------------------------------------------------------------
    # One tick
    # ------------------------------------------------------------------

    async def tick(self, *, wait: bool = False) -> WatchdogDecision:
        """Evaluate the latest run once; with ``wait`` the resume is awaited."""
        decision = await self._decide()
        if decision.resumed and decision.run is not None:
            self._resume_task = asyncio.create_task(self._resume(decision.run))
            if wait:
                await self._wait_for_resume()
        if decision.action not in ("none", "wait", "busy"):
            record_watchdog_action(decision.action)
            await self._publish_event(
                {
                    "type": "watchdog_action",
                    "time": iso_utcnow(),
                    "action": decision.action,
                    "run_id": decision.run_id,
                    "reason": decision.reason,
                }
            )
        return decision

    async def _decide(self) -> WatchdogDecision:
        if self.resume_in_progress or self.trigger.is_busy:
            return WatchdogDecision("busy", reason="a resume is already in progress")

        run = await asyncio.to_thread(self.progress.get_latest)
        if run is None:
            return WatchdogDecision("none", reason="no sync run recorded")

        with log_context(run_id=run.run_id):
            now = self._now()
            if run.status == SyncStatus.RUNNING:
                if run.has_yielded:
                    logger.info("Run yielded at page %s; resuming", run.current_page)
                    return WatchdogDecision("resume", run.run_id, "handoff after yield", run)
                if not is_stalled(run, now, self.settings.stall_threshold_seconds):
                    return WatchdogDecision("none", run.run_id, "run is advancing")
                return await self._fail_stalled(run, now)

            if run.status == SyncStatus.FAILED:
                return self._decide_failed(run, now)

            return WatchdogDecision("none", run.run_id, f"run is {run.status.value}")

    async def _fail_stalled(self, run: SyncRun, now: datetime) -> WatchdogDecision:
        idle = seconds_since_activity(run, now)
        message = (
            f"stalled: no progress for {idle:.0f}s (threshold {self.settings.stall_threshold_seconds:.0f}s)"
            if idle is not None
            else "stalled: no activity recorded"
        )
        updated = await asyncio.to_thread(self.progress.mark_stalled, run, message)
        if not updated:
            return WatchdogDecision("none", run.run_id, "run advanced while being checked")
        logger.error("Marked run failed at page %s: %s", run.current_page, message)
        run.status = SyncStatus.FAILED
        run.last_error = message
        run.last_error_category = "transient"
        decision = self._decide_failed(run, now)
        if decision.action == "resume":
            return WatchdogDecision("mark_failed_and_resume", run.run_id, message, run)
        return WatchdogDecision("mark_failed", run.run_id, message, run)

    def _decide_failed(self, run: SyncRun, now: datetime) -> WatchdogDecision:
        if is_connectivity_failure(run):
            if run.connectivity_failures >= self.settings.max_connectivity_resumes:
                marker = (run.run_id, run.connectivity_failures)
                reason = f"{run.connectivity_failures} consecutive connectivity failures"
                if self._given_up == marker:
                    return WatchdogDecision("wait", run.run_id, f"gave up: {reason}")
                logger.error("Giving up after %s: %s", reason, run.last_error)
                self._given_up = marker
                return WatchdogDecision("give_up", run.run_id, reason, run)
        if not should_resume(run, now, self.settings):
            delay = resume_delay(run, self.settings)
            return WatchdogDecision("wait", run.run_id, f"waiting out {delay:.0f}s grace period")
        logger.info(
            "Resuming failed run from page %s (%s)",
            run.current_page,
            run.last_error_category or "unknown",
        )
        return WatchdogDecision("resume", run.run_id, run.last_error or "failed", run)

    async def _resume(self, run: SyncRun) -> None:
        request = TriggerRequest(resume=True, from_page=run.current_page, source="watchdog")
        while True:
            response = await self.trigger.trigger(request)
            self.last_response = response
            logger.info(
                "Resume finished: status=%s page=%s processed=%s continue=%s",
                response.status,
                response.current_page,
                response.records_processed,
                response.should_continue,
            )
            if not response.should_continue or self._stop_event.is_set():
                logger.debug("Sync metrics: %s", get_metrics_summary())
                return
            request = TriggerRequest(resume=True, source="watchdog")

    async def _publish_event(self, payload: dict) -> None:
        try:
            await self._event_publisher(payload)
        except Exception:
            logger.exception("Failed to publish watchdog event")
