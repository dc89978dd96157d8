"""SyncRun domain model: the durable checkpoint of one logical sync job."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SyncStatus(str, Enum):
    """Lifecycle states of a sync run. There is no paused state."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def from_string(cls, value: str | None) -> "SyncStatus":
        """Convert a stored status string, defaulting to IDLE."""
        if not value:
            return cls.IDLE
        normalized = value.lower().strip()
        for status in cls:
            if status.value == normalized:
                return status
        raise ValueError(f"Unknown sync status: {value!r}")


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO timestamp (``Z`` suffix allowed); naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class SyncRun:
    """Checkpointed state of a sync run.

    ``current_page`` is the next page to process and never decreases within a
    run. ``records_processed`` counts records durably written. One ``run_id``
    is reused across every resume of the same logical run.
    """

    run_id: str
    status: SyncStatus = SyncStatus.IDLE
    current_page: int = 1
    records_processed: int = 0
    consecutive_empty_pages: int = 0
    error_count: int = 0
    started_at: str | None = None
    last_activity_at: str | None = None
    finished_at: str | None = None
    expected_total: int | None = None
    records_unchanged: int = 0
    records_skipped: int = 0
    last_error: str | None = None
    last_error_category: str | None = None
    connectivity_failures: int = 0
    resume_count: int = 0
    source: str | None = None
    yielded_at: str | None = None

    @classmethod
    def new(cls, *, start_page: int = 1, source: str | None = None) -> "SyncRun":
        """Create a fresh idle run with a new identifier."""
        if start_page < 1:
            raise ValueError("start_page must be >= 1")
        return cls(run_id=uuid.uuid4().hex, current_page=start_page, source=source)

    @property
    def is_running(self) -> bool:
        return self.status == SyncStatus.RUNNING

    @property
    def is_completed(self) -> bool:
        return self.status == SyncStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == SyncStatus.FAILED

    @property
    def has_yielded(self) -> bool:
        """True when the last invocation handed off before its budget ran out."""
        return self.status == SyncStatus.RUNNING and self.yielded_at is not None

    @property
    def progress_fraction(self) -> float | None:
        """Fraction of the upstream total written so far, if the total is known."""
        if not self.expected_total or self.expected_total <= 0:
            return None
        return self.records_processed / self.expected_total

    @property
    def progress_percent(self) -> float | None:
        fraction = self.progress_fraction
        return None if fraction is None else round(fraction * 100, 2)

    @property
    def last_activity(self) -> datetime | None:
        """Most recent sign of life: last activity, else the start time."""
        return parse_timestamp(self.last_activity_at) or parse_timestamp(self.started_at)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncRun":
        """Create a SyncRun from a row or JSON object, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if "run_id" not in values or not values["run_id"]:
            raise ValueError("SyncRun requires a run_id")
        values["status"] = SyncStatus.from_string(values.get("status"))
        for key in (
            "current_page",
            "records_processed",
            "consecutive_empty_pages",
            "error_count",
            "records_unchanged",
            "records_skipped",
            "connectivity_failures",
            "resume_count",
        ):
            if values.get(key) is None:
                values.pop(key, None)
            else:
                values[key] = int(values[key])
        if values.get("expected_total") is not None:
            values["expected_total"] = int(values["expected_total"])
        return cls(**values)
