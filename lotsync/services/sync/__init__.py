"""Synchronization engine.

This package is the official API for replicating upstream vehicle listings
into the local store. Import from here rather than from the submodules.

Public API:
  - RunCoordinator / InvocationResult – one invocation of a sync run
  - Watchdog / WatchdogDecision – stall detection and auto-resume
  - PageFetcher / PageResult – rate limited page downloads
  - BatchWriter / PageWrite – bounded concurrent upserts
  - ChangeDetector, fingerprint(), has_changed() – change detection
  - TokenBucket – shared request rate limiter
  - RetryPolicy / RetryExhaustedError – jittered exponential backoff
  - ErrorCategory, classify_error() and the SyncError hierarchy
  - SqliteProgressStore / SqliteDestinationStore – SQLite backed stores
  - SyncSettings / WatchdogSettings / UpstreamSettings – typed configuration
"""

from .coordinator import InvocationResult, RunCoordinator
from .errors import (ConnectivityError, DataError, ErrorCategory,
                     FatalSyncError, RateLimitedError, SyncError,
                     TransientError, classify_error)
from .fetcher import PageFetcher, PageResult
from .fingerprint import ChangeDetector, fingerprint, has_changed
from .rate_limiter import TokenBucket
from .retry import RetryExhaustedError, RetryPolicy
from .settings import SyncSettings, UpstreamSettings, WatchdogSettings
from .stores import SqliteDestinationStore, SqliteProgressStore
from .watchdog import Watchdog, WatchdogDecision
from .writer import BatchOutcome, BatchWriter, PageWrite

__all__ = [
    # === Coordination
    "InvocationResult",
    "RunCoordinator",
    "Watchdog",
    "WatchdogDecision",
    # === Pipeline stages
    "BatchOutcome",
    "BatchWriter",
    "ChangeDetector",
    "PageFetcher",
    "PageResult",
    "PageWrite",
    "TokenBucket",
    "fingerprint",
    "has_changed",
    # === Errors and retries
    "ConnectivityError",
    "DataError",
    "ErrorCategory",
    "FatalSyncError",
    "RateLimitedError",
    "RetryExhaustedError",
    "RetryPolicy",
    "SyncError",
    "TransientError",
    "classify_error",
    # === Stores and settings
    "SqliteDestinationStore",
    "SqliteProgressStore",
    "SyncSettings",
    "UpstreamSettings",
    "WatchdogSettings",
]
