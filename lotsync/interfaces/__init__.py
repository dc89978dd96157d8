"""Interface layer for lotsync.

Packages under ``lotsync.interfaces`` expose boundary adapters such as CLI
commands.
"""

from . import cli

__all__ = ["cli"]
