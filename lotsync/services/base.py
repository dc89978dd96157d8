"""Base service class with shared connection and infrastructure patterns.

This module provides a base class for service layer implementations,
standardizing connection management, logging, and schema initialization.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Callable, TypeVar

from lotsync.infrastructure.db import ensure_schema, get_connection
from lotsync.infrastructure.observability import get_logger

ConnectionFactory = Callable[[], AbstractContextManager[sqlite3.Connection]]
T = TypeVar("T")
S = TypeVar("S", bound="BaseService")


class BaseService:
    """Base class for the SQLite backed services.

    Provides shared infrastructure for:
    - Connection factory pattern (dependency injection for testing)
    - Schema initialization, once per service instance
    - Consistent logging setup

    Example usage:
        class MyService(BaseService):
            def count(self) -> int:
                return self._with_connection(
                    lambda conn: conn.execute("SELECT COUNT(*) FROM vehicles").fetchone()[0]
                )

        service = MyService.from_sqlite_path("/path/to/lotsync.db")
    """

    def __init__(self, connection_factory: ConnectionFactory) -> None:
        self._connection_factory = connection_factory
        self._logger = get_logger(self.__class__.__module__)
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    @classmethod
    def from_sqlite_path(cls: type[S], db_path: str | Path) -> S:
        """Create a service bound to a SQLite database path."""

        def connection_factory() -> AbstractContextManager[sqlite3.Connection]:
            return get_connection(db_path)

        return cls(connection_factory)

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if not self._schema_ready:
                ensure_schema(conn)
                self._schema_ready = True

    def _with_connection(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``fn`` on a fresh connection, read-only use."""
        with self._connection_factory() as conn:
            self._ensure_schema(conn)
            return fn(conn)

    def _in_transaction(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``fn`` on a fresh connection and commit, or roll back on error."""
        with self._connection_factory() as conn:
            self._ensure_schema(conn)
            try:
                result = fn(conn)
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
            return result
