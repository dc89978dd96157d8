"""Error taxonomy of the sync engine.

Every failure is sorted into one of four categories that decide how it is
handled:

* ``connectivity``: the upstream or the database cannot be reached at all
  (DNS, refused connections, auth/deployment errors). Never retried in a
  tight loop; the invocation aborts and the watchdog backs off.
* ``transient``: timeouts, rate limiting, 5xx, a locked database. Retried
  with jittered exponential backoff.
* ``data``: a malformed record. Skipped and logged.
* ``fatal``: the page error ceiling was hit; the run is marked failed.
"""

from __future__ import annotations

import asyncio
import sqlite3
from enum import Enum

import aiohttp

from lotsync.domain.models import MalformedRecordError
from lotsync.infrastructure.db import DatabaseError


class ErrorCategory(str, Enum):
    CONNECTIVITY = "connectivity"
    TRANSIENT = "transient"
    DATA = "data"
    FATAL = "fatal"


class SyncError(Exception):
    """Base class for errors raised inside the sync engine."""

    category: ErrorCategory = ErrorCategory.TRANSIENT

    def __init__(self, message: str, *, category: ErrorCategory | None = None) -> None:
        super().__init__(message)
        if category is not None:
            self.category = category


class ConnectivityError(SyncError):
    category = ErrorCategory.CONNECTIVITY

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientError(SyncError):
    category = ErrorCategory.TRANSIENT

    def __init__(
        self, message: str, *, status: int | None = None, retry_after: float | None = None
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class RateLimitedError(TransientError):
    """HTTP 429; ``retry_after`` carries the server's hint when it sent one."""


class DataError(SyncError):
    category = ErrorCategory.DATA

    def __init__(self, message: str, *, external_id: str | None = None) -> None:
        super().__init__(message)
        self.external_id = external_id


class FatalSyncError(SyncError):
    category = ErrorCategory.FATAL


# Upstream answers that mean "this endpoint/deployment is not usable" rather
# than "try again shortly".
CONNECTIVITY_STATUSES = frozenset({401, 403, 404, 410})
# Once a page of the run has been served, these mark pages past the end.
PAST_END_STATUSES = frozenset({404, 410})
TRANSIENT_STATUSES = frozenset({408, 425, 429})


def category_for_status(status: int) -> ErrorCategory | None:
    """Map an HTTP status to a category, or None for a success status."""
    if status < 400:
        return None
    if status in CONNECTIVITY_STATUSES:
        return ErrorCategory.CONNECTIVITY
    if status in TRANSIENT_STATUSES or status >= 500:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.DATA


def classify_error(exc: BaseException) -> ErrorCategory:
    """Sort an exception into an :class:`ErrorCategory`."""
    if isinstance(exc, SyncError):
        return exc.category
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, aiohttp.ClientResponseError):
        return category_for_status(exc.status) or ErrorCategory.TRANSIENT
    if isinstance(exc, aiohttp.ClientConnectorError):
        return ErrorCategory.CONNECTIVITY
    if isinstance(exc, aiohttp.ClientError):
        # Disconnects and payload errors mid-response.
        return ErrorCategory.TRANSIENT
    if isinstance(exc, sqlite3.OperationalError):
        message = str(exc).lower()
        if "locked" in message or "busy" in message:
            return ErrorCategory.TRANSIENT
        if "unable to open" in message:
            return ErrorCategory.CONNECTIVITY
        return ErrorCategory.TRANSIENT
    if isinstance(exc, (MalformedRecordError, ValueError, KeyError, TypeError)):
        return ErrorCategory.DATA
    if isinstance(exc, DatabaseError):
        return ErrorCategory.CONNECTIVITY
    if isinstance(exc, ConnectionResetError):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorCategory.CONNECTIVITY
    return ErrorCategory.TRANSIENT


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) == ErrorCategory.TRANSIENT


__all__ = [
    "ConnectivityError",
    "DataError",
    "ErrorCategory",
    "FatalSyncError",
    "PAST_END_STATUSES",
    "RateLimitedError",
    "SyncError",
    "TransientError",
    "category_for_status",
    "classify_error",
    "is_retryable",
]
