"""
Centralized DTOs and input/output models for lotsync services.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# --- Event Publishing Types ---
EventPayload = dict[str, object]
EventPublisher = Callable[[EventPayload], Awaitable[None]]


async def noop_event_publisher(_: EventPayload) -> None:
    """Default no-op event publisher for services that don't need events."""
    pass


class _CamelModel(BaseModel):
    """External surface uses camelCase; Python code may use either name."""

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


# --- Trigger DTOs ---
class TriggerRequest(_CamelModel):
    resume: bool = False
    from_page: int | None = Field(default=None, ge=1)
    source: str = "manual"
    # Reserved for callers that want a specific run; resolved to the latest otherwise.
    run_id: str | None = None


class TriggerResponse(_CamelModel):
    success: bool
    status: str
    run_id: str | None = None
    records_processed: int = 0
    current_page: int | None = None
    should_continue: bool = False
    progress_percent: float | None = None
    expected_total: int | None = None
    records_written: int = 0
    records_unchanged: int = 0
    records_skipped: int = 0
    pages_processed: int = 0
    error_count: int = 0
    error: str | None = None
    error_category: str | None = None
    completion_reason: str | None = None
    message: str | None = None

    def to_external(self) -> dict[str, Any]:
        """Serialize with camelCase keys for JSON consumers."""
        return self.model_dump(by_alias=True)


# --- Status DTOs ---
class SyncRunView(_CamelModel):
    run_id: str
    status: str
    current_page: int
    records_processed: int
    expected_total: int | None = None
    progress_percent: float | None = None
    consecutive_empty_pages: int = 0
    error_count: int = 0
    records_unchanged: int = 0
    records_skipped: int = 0
    started_at: str | None = None
    last_activity_at: str | None = None
    finished_at: str | None = None
    yielded_at: str | None = None
    last_error: str | None = None
    last_error_category: str | None = None
    connectivity_failures: int = 0
    resume_count: int = 0
    source: str | None = None


class SyncErrorView(_CamelModel):
    id: int
    run_id: str
    page: int | None = None
    category: str
    message: str
    external_id: str | None = None
    created_at: str
