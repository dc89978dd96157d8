"""In-process metrics for the synchronization engine.

Counters and histograms live in memory. The watchdog logs
:func:`get_metrics_summary` at debug level after every resume, and
:func:`format_prometheus` renders the Prometheus text exposition format.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Mapping

LabelKey = tuple[tuple[str, str | None], ...]


def _labels_to_key(labels: Mapping[str, str | None] | None) -> LabelKey:
    if not labels:
        return ()
    return tuple(sorted(labels.items()))


def _label_string(key: LabelKey, quoted: bool = False) -> str:
    if quoted:
        return ",".join(f'{k}="{v}"' for k, v in key)
    return ",".join(f"{k}={v}" for k, v in key) if key else "default"


# ---------------------------------------------------------------------------
# Metric storage
# ---------------------------------------------------------------------------


@dataclass
class Counter:
    """A monotonically increasing counter."""

    name: str
    help_text: str = ""
    _values: dict[LabelKey, float] = field(default_factory=lambda: defaultdict(float))
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def inc(self, value: float = 1.0, labels: Mapping[str, str | None] | None = None) -> None:
        key = _labels_to_key(labels)
        with self._lock:
            self._values[key] += value

    def get(self, labels: Mapping[str, str | None] | None = None) -> float:
        key = _labels_to_key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def snapshot(self) -> dict[LabelKey, float]:
        with self._lock:
            return dict(self._values)


@dataclass
class Histogram:
    """Sum/count accumulator for durations and sizes."""

    name: str
    help_text: str = ""
    _observations: dict[LabelKey, list[float]] = field(
        default_factory=lambda: defaultdict(list)
    )
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def observe(self, value: float, labels: Mapping[str, str | None] | None = None) -> None:
        key = _labels_to_key(labels)
        with self._lock:
            self._observations[key].append(value)

    def get_stats(self, labels: Mapping[str, str | None] | None = None) -> dict[str, float]:
        """Get count, sum, average and maximum for one label set."""
        key = _labels_to_key(labels)
        with self._lock:
            values = list(self._observations.get(key, ()))
        if not values:
            return {"count": 0, "sum": 0.0, "avg": 0.0, "max": 0.0}
        total = sum(values)
        return {
            "count": len(values),
            "sum": total,
            "avg": total / len(values),
            "max": max(values),
        }

    def label_keys(self) -> list[LabelKey]:
        with self._lock:
            return list(self._observations)


class MetricRegistry:
    """Registry of named counters and histograms."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str = "") -> Counter:
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name=name, help_text=help_text)
            return self._counters[name]

    def histogram(self, name: str, help_text: str = "") -> Histogram:
        with self._lock:
            if name not in self._histograms:
                self._histograms[name] = Histogram(name=name, help_text=help_text)
            return self._histograms[name]

    def all_counters(self) -> dict[str, Counter]:
        with self._lock:
            return dict(self._counters)

    def all_histograms(self) -> dict[str, Histogram]:
        with self._lock:
            return dict(self._histograms)

    def reset(self) -> None:
        """Drop every metric (used by tests and long-lived watchdogs)."""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()


_registry = MetricRegistry()


def get_registry() -> MetricRegistry:
    return _registry


# ---------------------------------------------------------------------------
# Convenience functions
# ---------------------------------------------------------------------------


def increment_counter(
    name: str,
    value: float = 1.0,
    labels: Mapping[str, str | None] | None = None,
    help_text: str = "",
) -> None:
    """Increment a counter by name, creating it on first use."""
    _registry.counter(name, help_text).inc(value, labels)


def observe_histogram(
    name: str,
    value: float,
    labels: Mapping[str, str | None] | None = None,
    help_text: str = "",
) -> None:
    """Record an observation in a histogram, creating it on first use."""
    _registry.histogram(name, help_text).observe(value, labels)


class Timer:
    """Context manager for timing operations and recording to a histogram."""

    def __init__(
        self,
        histogram_name: str,
        labels: Mapping[str, str | None] | None = None,
        help_text: str = "",
    ) -> None:
        self.histogram_name = histogram_name
        self.labels = labels
        self.help_text = help_text
        self.elapsed: float = 0.0
        self._start: float = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: object) -> None:
        self.elapsed = time.perf_counter() - self._start
        observe_histogram(self.histogram_name, self.elapsed, self.labels, self.help_text)


# ---------------------------------------------------------------------------
# Synchronization engine metrics
# ---------------------------------------------------------------------------

PAGES_FETCHED = "sync_pages_fetched_total"
PAGE_FETCH_DURATION = "sync_page_fetch_duration_seconds"
FETCH_ATTEMPTS = "sync_fetch_attempts_total"
RECORDS_WRITTEN = "sync_records_written_total"
RECORDS_UNCHANGED = "sync_records_unchanged_total"
RECORDS_SKIPPED = "sync_records_skipped_total"
BATCHES_WRITTEN = "sync_batches_total"
BATCH_WRITE_DURATION = "sync_batch_write_duration_seconds"
SYNC_ERRORS = "sync_errors_total"
SYNC_RUNS = "sync_invocations_total"
SYNC_RUN_DURATION = "sync_invocation_duration_seconds"
WATCHDOG_ACTIONS = "sync_watchdog_actions_total"


def record_page_fetch(outcome: str, attempts: int, duration: float) -> None:
    """Record one page fetch (``ok``, ``empty`` or ``failed``)."""
    increment_counter(
        PAGES_FETCHED, labels={"outcome": outcome}, help_text="Pages fetched from upstream"
    )
    increment_counter(
        FETCH_ATTEMPTS, value=float(attempts), help_text="Outbound page requests"
    )
    observe_histogram(
        PAGE_FETCH_DURATION,
        duration,
        labels={"outcome": outcome},
        help_text="Page fetch duration including retries",
    )


def record_page_records(written: int, unchanged: int, skipped: int) -> None:
    """Record per-page record outcomes."""
    if written:
        increment_counter(RECORDS_WRITTEN, float(written), help_text="Records upserted")
    if unchanged:
        increment_counter(
            RECORDS_UNCHANGED, float(unchanged), help_text="Records skipped as unchanged"
        )
    if skipped:
        increment_counter(
            RECORDS_SKIPPED, float(skipped), help_text="Malformed records skipped"
        )


def record_batch(status: str, size: int, duration: float) -> None:
    """Record one batch write (``ok`` or ``failed``)."""
    increment_counter(
        BATCHES_WRITTEN, labels={"status": status}, help_text="Batch writes by status"
    )
    observe_histogram(
        BATCH_WRITE_DURATION,
        duration,
        labels={"status": status},
        help_text="Batch write duration in seconds",
    )


def record_sync_error(category: str, stage: str) -> None:
    """Record an error by category and pipeline stage (fetch, write, transform)."""
    increment_counter(
        SYNC_ERRORS,
        labels={"category": category, "stage": stage},
        help_text="Sync errors by category",
    )


def record_sync_run(status: str, duration: float, records_written: int) -> None:
    """Record the end of one coordinator invocation."""
    increment_counter(
        SYNC_RUNS, labels={"status": status}, help_text="Coordinator invocations"
    )
    observe_histogram(
        SYNC_RUN_DURATION,
        duration,
        labels={"status": status},
        help_text="Coordinator invocation duration in seconds",
    )


def record_watchdog_action(action: str) -> None:
    """Record a watchdog decision (``resume``, ``mark_failed``, ``give_up``)."""
    increment_counter(
        WATCHDOG_ACTIONS, labels={"action": action}, help_text="Watchdog actions"
    )


# ---------------------------------------------------------------------------
# Export utilities
# ---------------------------------------------------------------------------


def get_metrics_summary() -> dict[str, object]:
    """Return a summary of all metrics for logging or CLI output."""
    counters: dict[str, dict[str, float]] = {}
    histograms: dict[str, dict[str, dict[str, float]]] = {}

    for name, counter in _registry.all_counters().items():
        counters[name] = {
            _label_string(key): value for key, value in counter.snapshot().items()
        }

    for name, histogram in _registry.all_histograms().items():
        histograms[name] = {
            _label_string(key): histogram.get_stats(dict(key))
            for key in histogram.label_keys()
        }

    return {"counters": counters, "histograms": histograms}


def format_prometheus() -> str:
    """Format metrics in Prometheus text exposition format."""
    lines: list[str] = []

    for name, counter in _registry.all_counters().items():
        if counter.help_text:
            lines.append(f"# HELP {name} {counter.help_text}")
        lines.append(f"# TYPE {name} counter")
        for key, value in counter.snapshot().items():
            suffix = f"{{{_label_string(key, quoted=True)}}}" if key else ""
            lines.append(f"{name}{suffix} {value}")

    for name, histogram in _registry.all_histograms().items():
        if histogram.help_text:
            lines.append(f"# HELP {name} {histogram.help_text}")
        lines.append(f"# TYPE {name} summary")
        for key in histogram.label_keys():
            stats = histogram.get_stats(dict(key))
            suffix = f"{{{_label_string(key, quoted=True)}}}" if key else ""
            lines.append(f"{name}_count{suffix} {stats['count']}")
            lines.append(f"{name}_sum{suffix} {stats['sum']}")

    return "\n".join(lines)
