import asyncio
import sqlite3

import aiohttp
import pytest

from lotsync.domain.models import MalformedRecordError
from lotsync.infrastructure.http import error_for_status
from lotsync.services.sync import (ConnectivityError, DataError,
                                   FatalSyncError, RateLimitedError,
                                   TransientError, classify_error)
from lotsync.services.sync.errors import (PAST_END_STATUSES, ErrorCategory,
                                          category_for_status, is_retryable)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (asyncio.TimeoutError(), ErrorCategory.TRANSIENT),
        (sqlite3.OperationalError("database is locked"), ErrorCategory.TRANSIENT),
        (sqlite3.OperationalError("unable to open database file"), ErrorCategory.CONNECTIVITY),
        (MalformedRecordError("record has no id"), ErrorCategory.DATA),
        (KeyError("id"), ErrorCategory.DATA),
        (ConnectionRefusedError(), ErrorCategory.CONNECTIVITY),
        (ConnectionResetError(), ErrorCategory.TRANSIENT),
        (aiohttp.ServerDisconnectedError(), ErrorCategory.TRANSIENT),
        (FatalSyncError("ceiling"), ErrorCategory.FATAL),
        (RuntimeError("who knows"), ErrorCategory.TRANSIENT),
    ],
)
def test_classify_error(exc, expected) -> None:
    assert classify_error(exc) == expected


@pytest.mark.parametrize(
    "status, expected",
    [
        (200, None),
        (401, ErrorCategory.CONNECTIVITY),
        (404, ErrorCategory.CONNECTIVITY),
        (410, ErrorCategory.CONNECTIVITY),
        (408, ErrorCategory.TRANSIENT),
        (429, ErrorCategory.TRANSIENT),
        (500, ErrorCategory.TRANSIENT),
        (503, ErrorCategory.TRANSIENT),
        (422, ErrorCategory.DATA),
    ],
)
def test_category_for_status(status, expected) -> None:
    assert category_for_status(status) == expected


def test_error_for_status_builds_matching_exceptions() -> None:
    limited = error_for_status(429, "Too Many Requests", "3")
    assert isinstance(limited, RateLimitedError)
    assert limited.retry_after == 3.0
    assert is_retryable(limited)

    assert isinstance(error_for_status(403, "Forbidden"), ConnectivityError)
    assert isinstance(error_for_status(502, "Bad Gateway"), TransientError)
    assert isinstance(error_for_status(400, "Bad Request"), DataError)
    assert error_for_status(429, "Too Many Requests", "soon").retry_after is None


def test_sync_error_categories() -> None:
    assert TransientError("x").category == ErrorCategory.TRANSIENT
    assert DataError("bad", external_id="car-1").external_id == "car-1"
    assert not is_retryable(DataError("bad", external_id="car-1"))


def test_only_transient_errors_are_retryable() -> None:
    assert is_retryable(TransientError("HTTP 503"))
    assert not is_retryable(FatalSyncError("error ceiling reached (50 failed pages)"))
    assert not is_retryable(error_for_status(404, "Not Found"))
    assert error_for_status(410, "Gone").status in PAST_END_STATUSES
    assert error_for_status(401, "Unauthorized").status not in PAST_END_STATUSES
