"""Show the checkpoint of the latest sync run."""

from __future__ import annotations

import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from lotsync.infrastructure.http import AuctionApiClient
from lotsync.interfaces.cli.context import CLIContext, build_cli_context
from lotsync.services.dto import SyncRunView
from lotsync.services.sync import (SqliteDestinationStore, SyncSettings,
                                   UpstreamSettings)
from lotsync.services.sync.settings import API_KEY_ENV

console = Console()


def probe_upstream(cli_context: CLIContext, api_key: str | None) -> dict[str, Any]:
    """Check that the upstream answers, without touching the database."""
    upstream = UpstreamSettings.from_config(cli_context.config, api_key=api_key)
    settings = SyncSettings.from_config(cli_context.config)
    client = AuctionApiClient(
        upstream.base_url,
        api_key=upstream.api_key,
        timeout_seconds=settings.request_timeout_seconds,
        user_agent=upstream.user_agent,
    )
    return client.probe()


def _run_table(run: SyncRunView) -> Table:
    table = Table(title=f"Sync run {run.run_id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    progress = (
        f"{run.progress_percent:.2f}% of {run.expected_total}"
        if run.progress_percent is not None
        else "total unknown"
    )
    rows = [
        ("Status", run.status),
        ("Current page", str(run.current_page)),
        ("Records processed", f"{run.records_processed} ({progress})"),
        ("Unchanged / skipped", f"{run.records_unchanged} / {run.records_skipped}"),
        ("Empty page streak", str(run.consecutive_empty_pages)),
        ("Errors", str(run.error_count)),
        ("Started", run.started_at or "-"),
        ("Last activity", run.last_activity_at or "-"),
        ("Finished", run.finished_at or "-"),
        ("Yielded", run.yielded_at or "-"),
        ("Resumes", str(run.resume_count)),
        ("Source", run.source or "-"),
    ]
    if run.last_error:
        rows.append(("Last error", f"({run.last_error_category or '?'}) {run.last_error}"))
    for label, value in rows:
        table.add_row(label, value)
    return table


@click.command(name="status")
@click.option("--db", "db_path", default=None, help="Path to the SQLite database.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=str),
    default=None,
    help="Path to a JSON configuration file.",
)
@click.option(
    "--errors",
    "error_limit",
    type=click.IntRange(min=0),
    default=10,
    show_default=True,
    help="Number of recent errors to show.",
)
@click.option("--upstream", is_flag=True, help="Also check that the upstream API answers.")
@click.option(
    "--api-key",
    envvar=API_KEY_ENV,
    default=None,
    help=f"Upstream API key for --upstream (also read from ${API_KEY_ENV}).",
)
@click.option("--json", "json_output", is_flag=True, help="Output the status as JSON.")
def status(
    db_path: str | None,
    config_path: str | None,
    error_limit: int,
    upstream: bool,
    api_key: str | None,
    json_output: bool,
) -> None:
    """Show the latest sync run, its recent errors and the stored vehicle count."""

    cli_context = build_cli_context(db_path, config_path)
    service = cli_context.build_service(api_key)
    snapshot = service.get_status(error_limit=error_limit)
    stored = SqliteDestinationStore.from_sqlite_path(cli_context.db_path).count()
    probe = probe_upstream(cli_context, api_key) if upstream else None

    run: SyncRunView | None = snapshot["run"]
    errors = snapshot["errors"]

    if json_output:
        payload = {
            "run": run.model_dump(by_alias=True) if run is not None else None,
            "errors": [error.model_dump(by_alias=True) for error in errors],
            "vehiclesStored": stored,
        }
        if probe is not None:
            payload["upstream"] = probe
        click.echo(json.dumps(payload, indent=2))
        return

    if run is None:
        console.print("[yellow]No sync run recorded yet.[/yellow]")
    else:
        console.print(_run_table(run))
    console.print(f"Vehicles stored: {stored}")

    if errors:
        table = Table(title=f"Recent errors ({len(errors)})")
        table.add_column("When")
        table.add_column("Page", justify="right")
        table.add_column("Category")
        table.add_column("Record")
        table.add_column("Message")
        for error in errors:
            table.add_row(
                error.created_at,
                str(error.page) if error.page is not None else "-",
                error.category,
                error.external_id or "-",
                error.message,
            )
        console.print(table)

    if probe is not None:
        if probe["reachable"] and probe["error"] is None:
            total = probe["total"] if probe["total"] is not None else "unknown"
            console.print(f"[green]Upstream reachable[/green] (total {total})")
        else:
            console.print(f"[red]Upstream check failed:[/red] {probe['error']}")
