"""Typed settings for the sync engine, read from ``config.json`` sections."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping

from lotsync.infrastructure.db import get_section

API_KEY_ENV = "LOTSYNC_API_KEY"


def _coerce(cls: type, section: Mapping[str, Any]) -> dict[str, Any]:
    """Pick the keys of ``section`` that name fields of ``cls``, cast to the default's type."""
    values: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in section or section[f.name] is None:
            continue
        raw = section[f.name]
        default = f.default
        if isinstance(default, bool):
            values[f.name] = bool(raw)
        elif isinstance(default, int):
            values[f.name] = int(raw)
        elif isinstance(default, float):
            values[f.name] = float(raw)
        else:
            values[f.name] = raw
    return values


@dataclass(frozen=True)
class SyncSettings:
    """Knobs of the run coordinator and its worker pools."""

    page_size: int = 100
    max_concurrency: int = 3
    rate_per_second: float = 2.0
    burst: int = 5
    request_timeout_seconds: float = 45.0
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 15.0
    batch_size: int = 500
    max_in_flight_batches: int = 3
    empty_page_threshold: int = 20
    max_pages: int = 5000
    completion_watermark: float = 0.99
    max_error_count: int = 50
    invocation_budget_seconds: float = 280.0
    budget_margin_seconds: float = 10.0

    def __post_init__(self) -> None:
        for name in ("page_size", "max_concurrency", "burst", "max_attempts",
                     "batch_size", "max_in_flight_batches", "empty_page_threshold",
                     "max_pages", "max_error_count"):
            if getattr(self, name) < 1:
                raise ValueError(f"sync.{name} must be >= 1")
        if self.rate_per_second <= 0:
            raise ValueError("sync.rate_per_second must be > 0")
        if not 0.0 < self.completion_watermark <= 1.0:
            raise ValueError("sync.completion_watermark must be in (0, 1]")
        if self.invocation_budget_seconds <= 0:
            raise ValueError("sync.invocation_budget_seconds must be > 0")

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "SyncSettings":
        return cls(**_coerce(cls, get_section(dict(cfg), "sync")))

    def with_overrides(self, **overrides: Any) -> "SyncSettings":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass(frozen=True)
class WatchdogSettings:
    """Timing rules of the watchdog."""

    interval_seconds: float = 15.0
    stall_threshold_seconds: float = 90.0
    resume_grace_seconds: float = 3.0
    low_progress_grace_seconds: float = 1.0
    low_progress_fraction: float = 0.05
    connectivity_grace_seconds: float = 60.0
    max_connectivity_resumes: int = 5

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("watchdog.interval_seconds must be > 0")
        if self.stall_threshold_seconds <= 0:
            raise ValueError("watchdog.stall_threshold_seconds must be > 0")

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "WatchdogSettings":
        return cls(**_coerce(cls, get_section(dict(cfg), "watchdog")))


@dataclass(frozen=True)
class UpstreamSettings:
    """Where the auction API lives and how to authenticate."""

    base_url: str = "https://auctionsapi.com/api"
    api_key: str = ""
    user_agent: str = ""

    @classmethod
    def from_config(
        cls, cfg: Mapping[str, Any], api_key: str | None = None
    ) -> "UpstreamSettings":
        values = _coerce(cls, get_section(dict(cfg), "upstream"))
        key = api_key or os.environ.get(API_KEY_ENV) or values.get("api_key", "")
        values["api_key"] = key
        return cls(**values)
