"""Start or resume a vehicle sync run from the command line."""

from __future__ import annotations

import asyncio
import json
import signal
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import click
from rich.console import Console

from lotsync.interfaces.cli.context import (build_cli_context, setup_logging,
                                         setup_tracing)
from lotsync.services.dto import TriggerRequest, TriggerResponse
from lotsync.services.sync.settings import API_KEY_ENV
from lotsync.services.sync_service import SyncService

console = Console()


def build_service(
    db_path: str | None, config_path: str | None, api_key: str | None, **overrides: Any
) -> SyncService:
    """Compose the sync service for a CLI invocation."""
    cli_context = build_cli_context(db_path, config_path)
    setup_tracing(cli_context.config)
    return cli_context.build_service(api_key, **overrides)


@contextmanager
def stop_on_signals(stop: Callable[[], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``stop`` while the event loop runs."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop)
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def run_sync(
    service: SyncService,
    request: TriggerRequest,
    *,
    follow: bool,
    max_invocations: int | None = None,
    on_response: Callable[[TriggerResponse], None] | None = None,
) -> list[TriggerResponse]:
    """Trigger once, and with ``follow`` keep resuming while the run asks for it."""
    responses: list[TriggerResponse] = []
    with stop_on_signals(service.stop):
        response = await service.trigger(request)
        while True:
            responses.append(response)
            if on_response is not None:
                on_response(response)
            if not (follow and response.should_continue):
                break
            if max_invocations is not None and len(responses) >= max_invocations:
                break
            response = await service.trigger(
                TriggerRequest(resume=True, source=request.source)
            )
    return responses


def _print_response(response: TriggerResponse) -> None:
    if not response.success:
        detail = response.error or response.message or "unknown error"
        category = f" ({response.error_category})" if response.error_category else ""
        console.print(f"[red]Sync {response.status}{category}:[/red] {detail}")
        if response.run_id:
            console.print(f"  run {response.run_id} at page {response.current_page}")
        return

    progress = (
        f"{response.progress_percent:.2f}% of {response.expected_total}"
        if response.progress_percent is not None
        else "total unknown"
    )
    colour = "green" if response.status == "completed" else "cyan"
    console.print(
        f"[{colour}]{response.status}[/{colour}] run={response.run_id} "
        f"page={response.current_page} processed={response.records_processed} ({progress})"
    )
    console.print(
        f"  written={response.records_written} unchanged={response.records_unchanged} "
        f"skipped={response.records_skipped} pages={response.pages_processed} "
        f"errors={response.error_count}"
    )
    if response.completion_reason:
        console.print(f"  completed ({response.completion_reason})")
    elif response.should_continue:
        console.print("  [yellow]yielded; resume to continue[/yellow]")


@click.command(name="sync")
@click.option(
    "--db",
    "db_path",
    default=None,
    help="Path to the SQLite database. Defaults to paths.db_path from config.json.",
)
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
    "--resume/--fresh",
    default=True,
    show_default=True,
    help="Resume the latest run from its checkpoint, or start a fresh run.",
)
@click.option(
    "--from-page",
    type=click.IntRange(min=1),
    default=None,
    help="Page to start from. Pages below a resume checkpoint are ignored.",
)
@click.option(
    "--follow/--no-follow",
    default=False,
    show_default=True,
    help="Keep invoking while the run yields before completing.",
)
@click.option(
    "--max-invocations",
    type=click.IntRange(min=1),
    default=None,
    help="Upper bound on invocations when following.",
)
@click.option("--page-size", type=click.IntRange(min=1), default=None, help="Records per page.")
@click.option(
    "--concurrency",
    "max_concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum page fetches in flight.",
)
@click.option(
    "--rate",
    "rate_per_second",
    type=float,
    default=None,
    help="Upstream requests per second.",
)
@click.option(
    "--budget",
    "invocation_budget_seconds",
    type=float,
    default=None,
    help="Seconds one invocation may run before yielding.",
)
@click.option("--json", "json_output", is_flag=True, help="Print the responses as JSON.")
@click.option("--verbose", is_flag=True, help="Enable debug logging.")
def sync(
    db_path: str | None,
    config_path: str | None,
    api_key: str | None,
    resume: bool,
    from_page: int | None,
    follow: bool,
    max_invocations: int | None,
    page_size: int | None,
    max_concurrency: int | None,
    rate_per_second: float | None,
    invocation_budget_seconds: float | None,
    json_output: bool,
    verbose: bool,
) -> None:
    """Replicate upstream vehicle listings into the local database.

    Without ``--fresh`` the latest run continues from its checkpoint; a
    completed run is left alone. With ``--follow`` the command keeps going
    until the run completes or fails instead of stopping after one
    invocation.
    """
    setup_logging(verbose)
    service = build_service(
        db_path,
        config_path,
        api_key,
        page_size=page_size,
        max_concurrency=max_concurrency,
        rate_per_second=rate_per_second,
        invocation_budget_seconds=invocation_budget_seconds,
    )
    request = TriggerRequest(resume=resume, from_page=from_page, source="cli")
    responses = asyncio.run(
        run_sync(
            service,
            request,
            follow=follow,
            max_invocations=max_invocations,
            on_response=None if json_output else _print_response,
        )
    )

    if json_output:
        payload = [response.to_external() for response in responses]
        click.echo(json.dumps(payload if follow else payload[0], indent=2))

    if not responses[-1].success:
        raise SystemExit(1)
