from lotsync.infrastructure.observability import (add_span_event,
                                                  get_trace_context,
                                                  is_tracing_enabled,
                                                  record_exception, trace_span)
from lotsync.interfaces.cli.context import setup_tracing


def test_tracing_is_off_by_default() -> None:
    assert is_tracing_enabled() is False
    assert get_trace_context() == {}


def test_trace_span_is_a_noop_when_disabled() -> None:
    with trace_span("sync.page", page=3) as span:
        assert span is None
        add_span_event("fetched", records=10)
        record_exception(RuntimeError("ignored"))


def test_setup_tracing_respects_disabled_section() -> None:
    assert setup_tracing({}) is False
    assert setup_tracing({"tracing": {"enabled": False, "endpoint": "http://x:4317"}}) is False
    assert is_tracing_enabled() is False
