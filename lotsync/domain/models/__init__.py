"""Domain models package.

This package contains the domain model classes for lotsync.
"""

from .sync_run import SyncRun, SyncStatus, parse_timestamp
from .vehicle import MalformedRecordError, VehicleRecord

__all__ = [
    "MalformedRecordError",
    "SyncRun",
    "SyncStatus",
    "VehicleRecord",
    "parse_timestamp",
]
