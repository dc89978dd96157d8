"""Run the stall watchdog against the local sync database."""

from __future__ import annotations

import asyncio
import json

import click
from rich.console import Console

from lotsync.interfaces.cli.context import (CLIContext, build_cli_context,
                                         setup_logging, setup_tracing)
from lotsync.interfaces.cli.sync import stop_on_signals
from lotsync.services.sync import Watchdog, WatchdogDecision
from lotsync.services.sync.settings import API_KEY_ENV

console = Console()


def build_watchdog(
    cli_context: CLIContext,
    api_key: str | None,
    *,
    interval_seconds: float | None = None,
    stall_threshold_seconds: float | None = None,
) -> Watchdog:
    """Compose a watchdog whose resumes go through the sync service."""
    settings = cli_context.watchdog_settings(
        interval_seconds=interval_seconds,
        stall_threshold_seconds=stall_threshold_seconds,
    )
    service = cli_context.build_service(api_key)
    return Watchdog(service.progress, service, settings)


def _describe(decision: WatchdogDecision) -> str:
    run = f" run={decision.run_id}" if decision.run_id else ""
    reason = f" ({decision.reason})" if decision.reason else ""
    return f"{decision.action}{run}{reason}"


async def _run_once(watchdog: Watchdog) -> WatchdogDecision:
    with stop_on_signals(watchdog.stop):
        return await watchdog.tick(wait=True)


async def _run_forever(watchdog: Watchdog) -> None:
    with stop_on_signals(watchdog.stop):
        await watchdog.run_forever()


@click.command(name="watchdog")
@click.option("--db", "db_path", default=None, help="Path to the SQLite database.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=str),
    default=None,
    help="Path to a JSON configuration file.",
)
@click.option(
    "--api-key",
    envvar=API_KEY_ENV,
    default=None,
    help=f"Upstream API key (also read from ${API_KEY_ENV}).",
)
@click.option(
    "--interval",
    "interval_seconds",
    type=float,
    default=None,
    help="Seconds between checks (watchdog.interval_seconds).",
)
@click.option(
    "--stall-threshold",
    "stall_threshold_seconds",
    type=float,
    default=None,
    help="Seconds without progress before a run counts as stalled.",
)
@click.option("--once", is_flag=True, help="Perform a single check and exit.")
@click.option("--json", "json_output", is_flag=True, help="With --once, print the decision as JSON.")
@click.option("--verbose", is_flag=True, help="Enable debug logging.")
def watchdog(
    db_path: str | None,
    config_path: str | None,
    api_key: str | None,
    interval_seconds: float | None,
    stall_threshold_seconds: float | None,
    once: bool,
    json_output: bool,
    verbose: bool,
) -> None:
    """Detect stalled sync runs and resume them from their checkpoint."""
    setup_logging(verbose)
    cli_context = build_cli_context(db_path, config_path)
    setup_tracing(cli_context.config)
    dog = build_watchdog(
        cli_context,
        api_key,
        interval_seconds=interval_seconds,
        stall_threshold_seconds=stall_threshold_seconds,
    )

    if not once:
        console.print(
            f"Watching {cli_context.db_path} every "
            f"{dog.settings.interval_seconds:g}s (Ctrl+C to stop)"
        )
        asyncio.run(_run_forever(dog))
        return

    decision = asyncio.run(_run_once(dog))
    response = dog.last_response if decision.resumed else None
    if json_output:
        payload = {
            "action": decision.action,
            "runId": decision.run_id,
            "reason": decision.reason,
            "response": response.to_external() if response is not None else None,
        }
        click.echo(json.dumps(payload, indent=2))
        return

    console.print(f"Watchdog: {_describe(decision)}")
    if response is not None:
        console.print(
            f"  resumed: status={response.status} page={response.current_page} "
            f"processed={response.records_processed}"
        )
