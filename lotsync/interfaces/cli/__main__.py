"""Entry point for running the lotsync CLI.

This module defines a top-level Click group that aggregates all subcommands
defined in the ``lotsync.interfaces.cli`` package. Executing
``python -m lotsync.interfaces.cli`` will invoke this group and present the
available commands.
"""

import click

from .status import status
from .sync import sync
from .watchdog import watchdog


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
def cli() -> None:
    """lotsync command-line interface."""


cli.add_command(sync)
cli.add_command(watchdog)
cli.add_command(status)


if __name__ == "__main__":
    cli()
