import sqlite3

import pytest

from fakes import vehicle_payload
from lotsync.domain.models import SyncRun, SyncStatus, VehicleRecord
from lotsync.infrastructure.db import CURRENT_SCHEMA_VERSION, ensure_schema
from lotsync.services.sync import (ChangeDetector, SqliteDestinationStore,
                                   SqliteProgressStore)


def _records(*numbers: int) -> list[VehicleRecord]:
    return ChangeDetector().stamp(VehicleRecord.from_upstream(vehicle_payload(n)) for n in numbers)


def test_progress_round_trip(tmp_path) -> None:
    store = SqliteProgressStore.from_sqlite_path(tmp_path / "sync.db")
    run = SyncRun.new(start_page=4, source="cli")
    run.status = SyncStatus.RUNNING
    run.records_processed = 120
    run.expected_total = 192_800
    run.last_activity_at = "2026-03-01T12:00:00Z"
    store.save_progress(run)

    loaded = store.get_progress(run.run_id)
    assert loaded == run
    assert store.get_progress("missing") is None


def test_get_latest_returns_most_recent_run(tmp_path) -> None:
    store = SqliteProgressStore.from_sqlite_path(tmp_path / "sync.db")
    first, second = SyncRun.new(), SyncRun.new()
    store.save_progress(first)
    store.save_progress(second)
    # Updating an older run does not make it the latest.
    first.current_page = 9
    store.save_progress(first)

    assert store.get_latest().run_id == second.run_id
    assert [r.run_id for r in store.list_runs()] == [second.run_id, first.run_id]


def test_errors_are_listed_newest_first(tmp_path) -> None:
    store = SqliteProgressStore.from_sqlite_path(tmp_path / "sync.db")
    run = SyncRun.new()
    store.record_error(run.run_id, "transient", "HTTP 503", page=3)
    store.record_error(run.run_id, "data", "year is not numeric", page=4, external_id="car-7")
    store.record_error("other-run", "data", "ignored")

    errors = store.list_errors(run.run_id)
    assert [e["page"] for e in errors] == [4, 3]
    assert errors[0]["external_id"] == "car-7"
    assert store.list_errors(run.run_id, limit=1)[0]["category"] == "data"


def test_mark_stalled_only_applies_to_unchanged_runs(tmp_path) -> None:
    store = SqliteProgressStore.from_sqlite_path(tmp_path / "sync.db")
    run = SyncRun.new()
    run.status = SyncStatus.RUNNING
    run.last_activity_at = "2026-03-01T12:00:00Z"
    store.save_progress(run)

    seen = store.get_progress(run.run_id)
    run.last_activity_at = "2026-03-01T12:00:05Z"
    store.save_progress(run)
    assert store.mark_stalled(seen, "stalled") is False
    assert store.get_progress(run.run_id).status == SyncStatus.RUNNING

    assert store.mark_stalled(store.get_progress(run.run_id), "stalled") is True
    failed = store.get_progress(run.run_id)
    assert failed.status == SyncStatus.FAILED
    assert failed.last_error == "stalled"
    assert failed.last_error_category == "transient"


def test_checkpoint_behind_the_stored_one_is_rejected(tmp_path) -> None:
    store = SqliteProgressStore.from_sqlite_path(tmp_path / "sync.db")
    run = SyncRun.new(start_page=1)
    run.status = SyncStatus.RUNNING
    stale = SyncRun.from_dict(run.to_dict())
    run.current_page = 7
    run.records_processed = 600
    assert store.save_progress(run) is True

    stale.current_page = 4
    stale.records_processed = 300
    stale.yielded_at = "2026-03-01T12:00:00Z"
    assert store.save_progress(stale) is False

    stored = store.get_progress(run.run_id)
    assert stored.current_page == 7
    assert stored.records_processed == 600
    assert stored.yielded_at is None

    run.status = SyncStatus.COMPLETED
    assert store.save_progress(run) is True
    assert store.get_progress(run.run_id).status == SyncStatus.COMPLETED


def test_destination_upsert_is_idempotent(tmp_path) -> None:
    store = SqliteDestinationStore.from_sqlite_path(tmp_path / "sync.db")

    assert store.upsert_batch(_records(1, 2, 3)) == 3
    first_seen = store.get("car-1")["first_seen_at"]
    assert store.upsert_batch(_records(1, 2, 3)) == 3
    assert store.count() == 3
    assert store.get("car-1")["first_seen_at"] == first_seen

    fingerprints = store.get_fingerprints(["car-1", "car-3", "car-404"])
    assert set(fingerprints) == {"car-1", "car-3"}
    assert store.get_fingerprints([]) == {}


def test_destination_rejects_unstamped_records_atomically(tmp_path) -> None:
    store = SqliteDestinationStore.from_sqlite_path(tmp_path / "sync.db")
    records = _records(1, 2)
    records[1].content_fingerprint = None

    with pytest.raises(ValueError):
        store.upsert_batch(records)
    assert store.count() == 0


def test_schema_upgrade_adds_columns_to_old_databases(tmp_path) -> None:
    db_path = tmp_path / "old.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE sync_runs (
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
        INSERT INTO sync_runs (run_id, status, current_page, records_processed)
        VALUES ('legacy', 'failed', 12, 1100);
        """
    )
    ensure_schema(conn)
    ensure_schema(conn)

    columns = {row[1] for row in conn.execute("PRAGMA table_info(sync_runs)")}
    migrations = [row[0] for row in conn.execute("SELECT name FROM schema_migrations")]
    version = conn.execute("SELECT version FROM schema_version").fetchone()[0]
    conn.close()

    assert {"expected_total", "yielded_at", "resume_count"} <= columns
    assert "add_sync_run_columns_v2" in migrations
    assert version == CURRENT_SCHEMA_VERSION

    legacy = SqliteProgressStore.from_sqlite_path(db_path).get_progress("legacy")
    assert legacy.status == SyncStatus.FAILED
    assert legacy.current_page == 12
    assert legacy.resume_count == 0
