"""OpenTelemetry tracing support for lotsync.

Tracing is optional and disabled by default. It requires the opentelemetry
packages (``pip install lotsync[tracing]``); when they are missing or tracing
is not configured, every helper in this module is a no-op.

Usage:
    from lotsync.infrastructure.observability import configure_tracing, trace_span

    configure_tracing(service_name="lotsync-worker", endpoint="http://localhost:4317")

    with trace_span("sync_page", page=42):
        ...
"""

from __future__ import annotations

import os
from contextlib import AbstractContextManager
from contextvars import ContextVar
from typing import Any

from .logging import get_logger

logger = get_logger(__name__)

_tracer: Any = None
_tracing_enabled: bool = False

# Trace/span IDs of the active span, used for log correlation
_trace_context: ContextVar[dict[str, str]] = ContextVar(
    "trace_context", default={}
)


def is_tracing_enabled() -> bool:
    """Check if tracing is currently enabled."""
    return _tracing_enabled


def get_trace_context() -> dict[str, str]:
    """Get current trace context for log correlation."""
    return _trace_context.get()


def configure_tracing(
    *,
    service_name: str = "lotsync",
    endpoint: str | None = None,
    enable: bool = True,
    sample_rate: float = 1.0,
) -> bool:
    """Configure OpenTelemetry tracing.

    Args:
        service_name: Name of this service in traces.
        endpoint: OTLP endpoint URL. When omitted, spans are only exported to
            the console if ``OTEL_TRACES_CONSOLE=true``.
        enable: Whether to enable tracing.
        sample_rate: Fraction of traces to sample (0.0 to 1.0).

    Returns:
        True if tracing was successfully configured, False otherwise.
    """
    global _tracer, _tracing_enabled

    if not enable:
        _tracing_enabled = False
        logger.info("Tracing disabled by configuration")
        return False

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import SERVICE_NAME, Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
    except ImportError as exc:
        logger.debug(f"OpenTelemetry not available: {exc}")
        _tracing_enabled = False
        return False

    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name}),
        sampler=TraceIdRatioBased(sample_rate),
    )

    if endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import \
                OTLPSpanExporter
            from opentelemetry.sdk.trace.export import BatchSpanProcessor

            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
            logger.info(f"Tracing exporter configured for {endpoint}")
        except ImportError:
            logger.warning(
                "opentelemetry-exporter-otlp not installed; traces won't be exported"
            )
    elif os.environ.get("OTEL_TRACES_CONSOLE", "").lower() == "true":
        from opentelemetry.sdk.trace.export import (ConsoleSpanExporter,
                                                    SimpleSpanProcessor)

        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("Console trace exporter enabled")

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(service_name)
    _tracing_enabled = True
    logger.info(f"Tracing enabled for service '{service_name}'")
    return True


class trace_span(AbstractContextManager):
    """Open a span for the duration of a ``with`` block.

    Returns ``None`` from ``__enter__`` when tracing is disabled.
    """

    def __init__(self, name: str, **attributes: Any) -> None:
        self.name = name
        self.attributes = attributes
        self.span = None
        self._span_ctx = None
        self._ctx_token = None

    def __enter__(self):
        if not _tracing_enabled or _tracer is None:
            return None
        self._span_ctx = _tracer.start_as_current_span(self.name)
        self.span = self._span_ctx.__enter__()
        for key, value in self.attributes.items():
            if value is not None:
                self.span.set_attribute(key, str(value))
        ctx = self.span.get_span_context()
        if ctx.is_valid:
            self._ctx_token = _trace_context.set({
                "trace_id": format(ctx.trace_id, "032x"),
                "span_id": format(ctx.span_id, "016x"),
            })
        return self.span

    def __exit__(self, exc_type, exc_value, traceback):
        if self._ctx_token is not None:
            _trace_context.reset(self._ctx_token)
        if self._span_ctx is not None:
            if exc_value is not None and self.span is not None:
                record_exception(exc_value)
            self._span_ctx.__exit__(exc_type, exc_value, traceback)
        return False


def add_span_event(name: str, **attributes: Any) -> None:
    """Add a timestamped event to the current span."""
    if not _tracing_enabled:
        return

    from opentelemetry import trace

    span = trace.get_current_span()
    if span and span.is_recording():
        span.add_event(name, attributes={k: str(v) for k, v in attributes.items()})


def record_exception(exception: BaseException) -> None:
    """Record an exception on the current span and mark it as errored."""
    if not _tracing_enabled:
        return

    from opentelemetry import trace

    span = trace.get_current_span()
    if span and span.is_recording():
        span.record_exception(exception)
        span.set_status(trace.Status(trace.StatusCode.ERROR))
