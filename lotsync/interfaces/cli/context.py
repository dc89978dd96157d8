"""Shared helpers for composing CLI command contexts.

This module centralises common CLI wiring such as loading the configuration
file, resolving the database path and building the sync service with the
project defaults applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from lotsync.infrastructure.db import get_path_config, get_section, load_config
from lotsync.infrastructure.observability import configure_logging, configure_tracing
from lotsync.services.sync import WatchdogSettings
from lotsync.services.sync_service import SyncService


@dataclass(frozen=True)
class CLIContext:
    """Container for CLI configuration and the resolved database path."""

    config: dict[str, Any]
    config_path: Path | None
    db_path: Path

    def build_service(self, api_key: str | None = None, **overrides: Any) -> SyncService:
        """Return a SyncService wired to this context's database."""

        return SyncService.from_config(
            self.config, db_path=self.db_path, api_key=api_key, **overrides
        )

    def watchdog_settings(self, **overrides: Any) -> WatchdogSettings:
        settings = WatchdogSettings.from_config(self.config)
        return replace(settings, **{k: v for k, v in overrides.items() if v is not None})


def build_cli_context(
    db_path: str | Path | None = None, config_path: str | Path | None = None
) -> CLIContext:
    """Build the CLI context with resolved configuration and database paths."""

    resolved_config = Path(config_path).expanduser() if config_path is not None else None
    config = load_config(resolved_config)
    resolved_db_path = (
        Path(db_path).expanduser()
        if db_path is not None
        else get_path_config(resolved_config)["db_path"]
    )
    return CLIContext(config=config, config_path=resolved_config, db_path=resolved_db_path)


def setup_tracing(config: dict[str, Any]) -> bool:
    """Enable OpenTelemetry spans when the ``tracing`` section asks for them."""

    section = get_section(config, "tracing")
    if not section.get("enabled"):
        return False
    return configure_tracing(
        service_name=str(section.get("service_name") or "lotsync"),
        endpoint=section.get("endpoint"),
        sample_rate=float(section.get("sample_rate", 1.0)),
    )


def setup_logging(verbose: bool, json_logs: bool = False) -> None:
    """Configure logging for a CLI command."""

    configure_logging(level=logging.DEBUG if verbose else logging.INFO, use_json=json_logs)
