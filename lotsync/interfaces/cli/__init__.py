"""CLI interface facades for lotsync.

This package is the canonical home for all Click commands. Use the
``lotsync.interfaces.cli`` namespace for imports and module execution.
"""

from .__main__ import cli
from .status import status
from .sync import sync
from .watchdog import watchdog

__all__ = [
    "cli",
    "status",
    "sync",
    "watchdog",
]
