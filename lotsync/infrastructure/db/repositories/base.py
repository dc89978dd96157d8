"""Base repository class with shared database query helpers."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Sequence
from typing import Any


class BaseRepository:
    """Base class for the repository implementations.

    Repositories never commit on their own; the caller owns the transaction
    so a whole batch either lands or is rolled back.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def _fetch_all_as_dicts(
        self, query: str, params: Sequence[Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query and return all rows as dictionaries keyed by column."""
        cur = self.conn.execute(query, tuple(params or ()))
        columns = [c[0] for c in cur.description]
        return [dict(zip(columns, row)) for row in cur.fetchall()]

    def _fetch_one_as_dict(
        self, query: str, params: Sequence[Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query and return the first row as a dictionary, or None."""
        cur = self.conn.execute(query, tuple(params or ()))
        row = cur.fetchone()
        if not row:
            return None
        columns = [c[0] for c in cur.description]
        return dict(zip(columns, row))

    def _fetch_scalar(self, query: str, params: Sequence[Any] | None = None) -> Any:
        """Execute query and return the first column of the first row."""
        row = self.conn.execute(query, tuple(params or ())).fetchone()
        return row[0] if row else None

    def _execute(self, query: str, params: Sequence[Any] | None = None) -> sqlite3.Cursor:
        return self.conn.execute(query, tuple(params or ()))

    def _execute_many(
        self, query: str, rows: Iterable[Sequence[Any] | dict[str, Any]]
    ) -> sqlite3.Cursor:
        return self.conn.executemany(query, rows)
