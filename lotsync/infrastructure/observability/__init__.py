"""Observability and logging facades."""

from .logging import (
    configure_logging,
    current_log_context,
    get_logger,
    log_context,
    log_exception,
)
from .metrics import (
    Timer,
    format_prometheus,
    get_metrics_summary,
    get_registry,
    increment_counter,
    observe_histogram,
    record_batch,
    record_page_fetch,
    record_page_records,
    record_sync_error,
    record_sync_run,
    record_watchdog_action,
)
from .tracing import (
    add_span_event,
    configure_tracing,
    get_trace_context,
    is_tracing_enabled,
    record_exception,
    trace_span,
)

__all__ = [
    # Logging
    "configure_logging",
    "current_log_context",
    "get_logger",
    "log_context",
    "log_exception",
    # Metrics
    "Timer",
    "format_prometheus",
    "get_metrics_summary",
    "get_registry",
    "increment_counter",
    "observe_histogram",
    "record_batch",
    "record_page_fetch",
    "record_page_records",
    "record_sync_error",
    "record_sync_run",
    "record_watchdog_action",
    # Tracing
    "add_span_event",
    "configure_tracing",
    "get_trace_context",
    "is_tracing_enabled",
    "record_exception",
    "trace_span",
]
