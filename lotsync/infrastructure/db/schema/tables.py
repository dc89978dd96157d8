from __future__ import annotations

SCHEMA_VERSION_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);
"""

SCHEMA_MIGRATIONS_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    applied_at TEXT NOT NULL,
    notes TEXT
);
"""

SCHEMA_VEHICLES_SQL = """
CREATE TABLE IF NOT EXISTS vehicles (
    external_id TEXT PRIMARY KEY,
    make TEXT,
    model TEXT,
    year INTEGER,
    price REAL,
    mileage_km INTEGER,
    vin TEXT,
    fuel TEXT,
    transmission TEXT,
    color TEXT,
    condition TEXT,
    lot_number TEXT,
    location_city TEXT,
    location_state TEXT,
    location_country TEXT,
    damage_primary TEXT,
    damage_secondary TEXT,
    title_status TEXT,
    auction_date TEXT,
    bid_count INTEGER,
    images TEXT,
    raw_payload TEXT,
    content_fingerprint TEXT NOT NULL,
    first_seen_at TEXT NOT NULL,
    last_synced_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_vehicles_make_model ON vehicles (make, model);
CREATE INDEX IF NOT EXISTS idx_vehicles_year ON vehicles (year);
CREATE INDEX IF NOT EXISTS idx_vehicles_price ON vehicles (price);
"""

# Columns introduced after the first release; added in place on older databases.
VEHICLE_COLUMNS_V2 = {
    "body_type": "TEXT",
    "sale_status": "TEXT",
    "image_count": "INTEGER",
}

SCHEMA_SYNC_RUNS_SQL = """
CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL,
    current_page INTEGER NOT NULL DEFAULT 1,
    records_processed INTEGER NOT NULL DEFAULT 0,
    consecutive_empty_pages INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    last_activity_at TEXT,
    finished_at TEXT
);
"""

SYNC_RUN_COLUMNS_V2 = {
    "expected_total": "INTEGER",
    "records_unchanged": "INTEGER NOT NULL DEFAULT 0",
    "records_skipped": "INTEGER NOT NULL DEFAULT 0",
    "last_error": "TEXT",
    "last_error_category": "TEXT",
    "connectivity_failures": "INTEGER NOT NULL DEFAULT 0",
    "resume_count": "INTEGER NOT NULL DEFAULT 0",
    "source": "TEXT",
    "yielded_at": "TEXT",
}

SCHEMA_SYNC_ERRORS_SQL = """
CREATE TABLE IF NOT EXISTS sync_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    page INTEGER,
    category TEXT NOT NULL,
    message TEXT NOT NULL,
    external_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_errors_run_id ON sync_errors (run_id);
"""
