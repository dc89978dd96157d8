"""Completion, stall and resume rules for sync runs.

These are pure functions over :class:`SyncRun` so the coordinator and the
watchdog apply the same rules and tests can exercise them without I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from .models.sync_run import SyncRun, SyncStatus

if TYPE_CHECKING:
    from lotsync.services.sync.settings import WatchdogSettings

CONNECTIVITY_CATEGORY = "connectivity"


class CompletionReason(str, Enum):
    NATURAL = "natural"
    WATERMARK = "watermark"
    PAGE_LIMIT = "page_limit"


@dataclass(frozen=True)
class CompletionPolicy:
    """When a run may be marked completed.

    A streak of ``empty_page_threshold`` empty pages completes the run no
    matter how far the progress percentage got. Otherwise the run completes
    only when the upstream total is known and at least ``watermark`` of it has
    been written. Past ``max_pages`` the run completes regardless.
    """

    empty_page_threshold: int = 20
    watermark: float = 0.99
    max_pages: int | None = None

    def __post_init__(self) -> None:
        if self.empty_page_threshold < 1:
            raise ValueError("empty_page_threshold must be >= 1")
        if not 0.0 < self.watermark <= 1.0:
            raise ValueError("watermark must be in (0, 1]")
        if self.max_pages is not None and self.max_pages < 1:
            raise ValueError("max_pages must be >= 1")

    def evaluate(self, run: SyncRun) -> CompletionReason | None:
        if run.consecutive_empty_pages >= self.empty_page_threshold:
            return CompletionReason.NATURAL
        fraction = run.progress_fraction
        if fraction is not None and fraction >= self.watermark:
            return CompletionReason.WATERMARK
        if self.max_pages is not None and run.current_page > self.max_pages:
            return CompletionReason.PAGE_LIMIT
        return None


def _utc(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return now if now.tzinfo else now.replace(tzinfo=timezone.utc)


def seconds_since_activity(run: SyncRun, now: datetime | None = None) -> float | None:
    """Seconds since the run last showed progress, or None if it never did."""
    last = run.last_activity
    if last is None:
        return None
    return max(0.0, (_utc(now) - last).total_seconds())


def is_stalled(run: SyncRun, now: datetime | None, threshold_seconds: float) -> bool:
    """A running run is stalled when it has not advanced within the threshold.

    A run that has yielded is waiting for its next invocation, not stalled.
    """
    if run.status != SyncStatus.RUNNING or run.yielded_at is not None:
        return False
    elapsed = seconds_since_activity(run, now)
    if elapsed is None:
        return True
    return elapsed > threshold_seconds


def is_connectivity_failure(run: SyncRun) -> bool:
    return run.status == SyncStatus.FAILED and run.last_error_category == CONNECTIVITY_CATEGORY


def resume_delay(run: SyncRun, settings: "WatchdogSettings") -> float:
    """Seconds a failed run must sit idle before the watchdog resumes it."""
    if is_connectivity_failure(run):
        return settings.connectivity_grace_seconds
    fraction = run.progress_fraction
    if fraction is not None and fraction < settings.low_progress_fraction:
        return settings.low_progress_grace_seconds
    return settings.resume_grace_seconds


def should_resume(run: SyncRun, now: datetime | None, settings: "WatchdogSettings") -> bool:
    """Whether a failed run has waited out its grace period."""
    if run.status != SyncStatus.FAILED:
        return False
    elapsed = seconds_since_activity(run, now)
    if elapsed is None:
        return True
    return elapsed > resume_delay(run, settings)
