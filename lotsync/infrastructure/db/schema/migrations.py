from __future__ import annotations

import sqlite3

from ..connection import iso_utcnow
from .tables import SCHEMA_MIGRATIONS_SQL, SCHEMA_VERSION_SQL

# Current schema version - increment when making structural changes.
CURRENT_SCHEMA_VERSION = 2


class SchemaMigrator:
    """Lightweight migration runner backed by ``schema_migrations``.

    Migrations are identified by name and recorded once. Structural upgrades
    are additive: new nullable (or defaulted) columns are added in place so
    databases written by older releases keep working.

    The ``schema_version`` table holds a single integer that is raised to
    ``CURRENT_SCHEMA_VERSION`` after the upgrade steps ran.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # -------------------------------------------------------------------------
    # Schema version tracking
    # -------------------------------------------------------------------------

    def get_version(self) -> int | None:
        """Return the current schema version, or None if not set."""
        self.conn.executescript(SCHEMA_VERSION_SQL)
        row = self.conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        return row[0] if row else None

    def set_version(self, version: int) -> None:
        self.conn.executescript(SCHEMA_VERSION_SQL)
        self.conn.execute("DELETE FROM schema_version")
        self.conn.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, iso_utcnow()),
        )

    def ensure_current_version(self) -> None:
        current = self.get_version()
        if current is None or current < CURRENT_SCHEMA_VERSION:
            self.set_version(CURRENT_SCHEMA_VERSION)

    # -------------------------------------------------------------------------
    # Migration tracking (by name)
    # -------------------------------------------------------------------------

    def ensure_table(self) -> None:
        self.conn.executescript(SCHEMA_MIGRATIONS_SQL)

    def has_migration(self, name: str) -> bool:
        cur = self.conn.execute("SELECT 1 FROM schema_migrations WHERE name = ?", (name,))
        return cur.fetchone() is not None

    def record(self, name: str, notes: str | None = None) -> None:
        self.conn.execute(
            "INSERT INTO schema_migrations (name, applied_at, notes) VALUES (?, ?, ?)",
            (name, iso_utcnow(), notes),
        )

    def add_columns(self, table: str, columns: dict[str, str], migration_name: str) -> list[str]:
        """Add any of ``columns`` missing from ``table`` and record the migration.

        Returns the names of the columns that were added.
        """
        existing = {row[1] for row in self.conn.execute(f"PRAGMA table_info({table})").fetchall()}
        added: list[str] = []
        for column, sql_type in columns.items():
            if column in existing:
                continue
            self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {sql_type}")
            added.append(column)
        if added and not self.has_migration(migration_name):
            self.record(migration_name, ",".join(added))
        return added
