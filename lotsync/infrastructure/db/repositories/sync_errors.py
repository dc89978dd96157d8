from __future__ import annotations

from typing import Any

from ..connection import iso_utcnow
from .base import BaseRepository

# Long upstream error bodies are cut to keep the table small.
MAX_MESSAGE_LENGTH = 2000


class SyncErrorRepository(BaseRepository):
    def add(
        self,
        *,
        run_id: str,
        category: str,
        message: str,
        page: int | None = None,
        external_id: str | None = None,
        created_at: str | None = None,
    ) -> int:
        cur = self._execute(
            "INSERT INTO sync_errors (run_id, page, category, message, external_id, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                run_id,
                page,
                category,
                message[:MAX_MESSAGE_LENGTH],
                external_id,
                created_at or iso_utcnow(),
            ),
        )
        return cur.lastrowid or 0

    def list_for_run(self, run_id: str, limit: int = 20) -> list[dict[str, Any]]:
        return self._fetch_all_as_dicts(
            "SELECT id, run_id, page, category, message, external_id, created_at "
            "FROM sync_errors WHERE run_id = ? ORDER BY id DESC LIMIT ?",
            (run_id, limit),
        )

    def count_for_run(self, run_id: str, category: str | None = None) -> int:
        if category is None:
            return int(
                self._fetch_scalar("SELECT COUNT(*) FROM sync_errors WHERE run_id = ?", (run_id,))
                or 0
            )
        return int(
            self._fetch_scalar(
                "SELECT COUNT(*) FROM sync_errors WHERE run_id = ? AND category = ?",
                (run_id, category),
            )
            or 0
        )
