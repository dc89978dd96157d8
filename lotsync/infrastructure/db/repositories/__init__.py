from .base import BaseRepository
from .sync_errors import SyncErrorRepository
from .sync_runs import SyncRunRepository
from .vehicles import VehicleRepository

__all__ = [
    "BaseRepository",
    "SyncErrorRepository",
    "SyncRunRepository",
    "VehicleRepository",
]
