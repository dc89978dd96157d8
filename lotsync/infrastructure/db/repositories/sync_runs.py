from __future__ import annotations

from typing import Any

from .base import BaseRepository

_COLUMNS = (
    "run_id",
    "status",
    "current_page",
    "records_processed",
    "consecutive_empty_pages",
    "error_count",
    "started_at",
    "last_activity_at",
    "finished_at",
    "expected_total",
    "records_unchanged",
    "records_skipped",
    "last_error",
    "last_error_category",
    "connectivity_failures",
    "resume_count",
    "source",
    "yielded_at",
)

_SAVE_SQL = (
    f"INSERT INTO sync_runs ({', '.join(_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _COLUMNS)}) "
    "ON CONFLICT(run_id) DO UPDATE SET "
    + ", ".join(f"{c} = excluded.{c}" for c in _COLUMNS if c != "run_id")
    + " WHERE excluded.current_page >= sync_runs.current_page"
)


class SyncRunRepository(BaseRepository):
    def get(self, run_id: str) -> dict[str, Any] | None:
        return self._fetch_one_as_dict("SELECT * FROM sync_runs WHERE run_id = ?", (run_id,))

    def get_latest(self) -> dict[str, Any] | None:
        """Return the most recently created run."""
        return self._fetch_one_as_dict("SELECT * FROM sync_runs ORDER BY id DESC LIMIT 1")

    def save(self, values: dict[str, Any]) -> bool:
        """Insert or update a run. Does not commit.

        An update that would move ``current_page`` backwards is ignored and
        False is returned.
        """
        cur = self._execute(_SAVE_SQL, [values.get(c) for c in _COLUMNS])
        return cur.rowcount == 1

    def list_recent(self, limit: int = 10) -> list[dict[str, Any]]:
        return self._fetch_all_as_dicts(
            "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
        )

    def fail_if_unchanged(
        self, run_id: str, last_activity_at: str | None, message: str, category: str
    ) -> bool:
        """Set a running run to failed unless it recorded activity since it was read."""
        cur = self._execute(
            "UPDATE sync_runs SET status = 'failed', last_error = ?, last_error_category = ?, "
            "yielded_at = NULL "
            "WHERE run_id = ? AND status = 'running' AND last_activity_at IS ?",
            (message, category, run_id, last_activity_at),
        )
        return cur.rowcount == 1
