from __future__ import annotations

import sqlite3

from .migrations import SchemaMigrator
from .tables import (
    SCHEMA_SYNC_ERRORS_SQL,
    SCHEMA_SYNC_RUNS_SQL,
    SCHEMA_VEHICLES_SQL,
    SYNC_RUN_COLUMNS_V2,
    VEHICLE_COLUMNS_V2,
)


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create the sync tables and apply additive column upgrades."""

    migrator = SchemaMigrator(conn)
    migrator.ensure_table()
    conn.executescript(SCHEMA_VEHICLES_SQL)
    conn.executescript(SCHEMA_SYNC_RUNS_SQL)
    conn.executescript(SCHEMA_SYNC_ERRORS_SQL)
    migrator.add_columns("vehicles", VEHICLE_COLUMNS_V2, "add_vehicle_columns_v2")
    migrator.add_columns("sync_runs", SYNC_RUN_COLUMNS_V2, "add_sync_run_columns_v2")
    migrator.ensure_current_version()
    conn.commit()
