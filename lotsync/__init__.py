"""
lotsync package initializer.

This package replicates vehicle listings from a paginated auction API into a
local SQLite catalog and keeps that replica current with a resumable,
self-healing synchronization engine.

The package exposes a ``__version__`` attribute indicating the installed
version of lotsync. The version is read from pyproject.toml via
importlib.metadata – this is the single source of truth.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("lotsync")
except PackageNotFoundError:
    # Package is not installed (running from source without pip install -e .)
    __version__ = "0.0.0.dev"

__all__: list[str] = ["__version__"]
