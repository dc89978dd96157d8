import importlib
import json

import pytest
from click.testing import CliRunner

from fakes import FakeUpstream, fast_settings, listing
from lotsync.domain.models import SyncRun, SyncStatus
from lotsync.infrastructure.db import iso_utcnow
from lotsync.interfaces.cli import cli
from lotsync.services.sync import SqliteDestinationStore, SqliteProgressStore
from lotsync.services.sync_service import SyncService

sync_cli = importlib.import_module("lotsync.interfaces.cli.sync")
status_cli = importlib.import_module("lotsync.interfaces.cli.status")
watchdog_cli = importlib.import_module("lotsync.interfaces.cli.watchdog")


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    for module in (sync_cli, watchdog_cli):
        monkeypatch.setattr(module, "setup_logging", lambda *args, **kwargs: None)


def _patch_service(monkeypatch, upstream, seen=None):
    def build_service(db_path, config_path, api_key, **overrides):
        if seen is not None:
            seen.update(overrides, api_key=api_key)
        return SyncService(
            progress=SqliteProgressStore.from_sqlite_path(db_path),
            destination=SqliteDestinationStore.from_sqlite_path(db_path),
            upstream_factory=upstream.factory(),
            settings=fast_settings(),
        )

    monkeypatch.setattr(sync_cli, "build_service", build_service)


def test_sync_command_prints_json_response(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "sync.db"
    seen: dict = {}
    _patch_service(monkeypatch, FakeUpstream(listing(2)), seen)

    result = CliRunner().invoke(
        cli,
        ["sync", "--db", str(db_path), "--fresh", "--page-size", "25", "--json"],
        env={"LOTSYNC_API_KEY": "from-env"},
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "completed"
    assert payload["recordsProcessed"] == 20
    assert seen["page_size"] == 25
    assert seen["api_key"] == "from-env"


def test_sync_follow_keeps_invoking_until_done(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "sync.db"
    _patch_service(monkeypatch, FakeUpstream(listing(2)))
    progress = SqliteProgressStore.from_sqlite_path(db_path)
    progress.save_progress(
        SyncRun(
            run_id="r1",
            status=SyncStatus.RUNNING,
            current_page=2,
            records_processed=10,
            last_activity_at=iso_utcnow(),
            yielded_at=iso_utcnow(),
        )
    )

    result = CliRunner().invoke(cli, ["sync", "--db", str(db_path), "--follow", "--json"])

    assert result.exit_code == 0, result.output
    responses = json.loads(result.output)
    assert [r["runId"] for r in responses] == ["r1"]
    assert responses[-1]["status"] == "completed"
    assert responses[-1]["recordsProcessed"] == 20


def test_sync_failure_sets_exit_code(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "sync.db"
    _patch_service(monkeypatch, FakeUpstream(listing(1)))
    SqliteProgressStore.from_sqlite_path(db_path).save_progress(
        SyncRun(run_id="busy", status=SyncStatus.RUNNING, last_activity_at=iso_utcnow())
    )

    result = CliRunner().invoke(cli, ["sync", "--db", str(db_path)])

    assert result.exit_code == 1
    assert "another invocation" in result.output


def test_status_shows_latest_run(tmp_path) -> None:
    db_path = tmp_path / "sync.db"
    progress = SqliteProgressStore.from_sqlite_path(db_path)
    progress.save_progress(
        SyncRun(
            run_id="r1",
            status=SyncStatus.RUNNING,
            current_page=1834,
            records_processed=183_160,
            expected_total=192_800,
        )
    )
    progress.record_error("r1", "transient", "HTTP 503 Service Unavailable", page=1201)

    result = CliRunner().invoke(cli, ["status", "--db", str(db_path), "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["run"]["status"] == "running"
    assert payload["run"]["progressPercent"] == 95.0
    assert payload["errors"][0]["page"] == 1201
    assert payload["vehiclesStored"] == 0


def test_status_table_without_runs(tmp_path) -> None:
    result = CliRunner().invoke(cli, ["status", "--db", str(tmp_path / "empty.db")])
    assert result.exit_code == 0, result.output
    assert "No sync run recorded yet" in result.output


def test_status_upstream_probe(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(
        status_cli,
        "probe_upstream",
        lambda ctx, key: {"reachable": True, "status": 200, "total": 5, "error": None},
    )
    result = CliRunner().invoke(
        cli, ["status", "--db", str(tmp_path / "s.db"), "--upstream", "--json"]
    )
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["upstream"]["total"] == 5


def test_watchdog_once_marks_stalled_run(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "sync.db"
    progress = SqliteProgressStore.from_sqlite_path(db_path)
    progress.save_progress(
        SyncRun(
            run_id="r1",
            status=SyncStatus.RUNNING,
            current_page=4,
            last_activity_at="2020-01-01T00:00:00Z",
        )
    )
    upstream = FakeUpstream(listing(5))

    def build_watchdog(cli_context, api_key, **settings):
        service = SyncService(
            progress=progress,
            destination=SqliteDestinationStore.from_sqlite_path(db_path),
            upstream_factory=upstream.factory(),
            settings=fast_settings(),
        )
        return watchdog_cli.Watchdog(
            progress, service, cli_context.watchdog_settings(**settings)
        )

    monkeypatch.setattr(watchdog_cli, "build_watchdog", build_watchdog)

    result = CliRunner().invoke(
        cli, ["watchdog", "--db", str(db_path), "--once", "--json", "--stall-threshold", "90"]
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["action"] == "mark_failed_and_resume"
    assert payload["response"]["status"] == "completed"
    assert min(upstream.calls) == 4
    assert progress.get_progress("r1").status == SyncStatus.COMPLETED


def test_cli_lists_commands() -> None:
    result = CliRunner().invoke(cli, ["-h"])
    assert result.exit_code == 0
    for name in ("sync", "watchdog", "status"):
        assert name in result.output
