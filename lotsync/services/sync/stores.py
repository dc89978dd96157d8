"""SQLite backed progress and destination stores.

Both stores are blocking; the coordinator and the batch writer call them via
``asyncio.to_thread``. Every call opens its own connection, so concurrent
batch writes never share one, and each call is a single transaction.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

from lotsync.domain.models import SyncRun, VehicleRecord
from lotsync.infrastructure.db import iso_utcnow
from lotsync.infrastructure.db.repositories import (SyncErrorRepository,
                                                    SyncRunRepository,
                                                    VehicleRepository)
from lotsync.services.base import BaseService


class ProgressStore(Protocol):
    def get_progress(self, run_id: str) -> SyncRun | None: ...

    def get_latest(self) -> SyncRun | None: ...

    def save_progress(self, run: SyncRun) -> bool: ...

    def record_error(
        self,
        run_id: str,
        category: str,
        message: str,
        *,
        page: int | None = None,
        external_id: str | None = None,
    ) -> None: ...

    def list_errors(self, run_id: str, limit: int = 20) -> list[dict[str, Any]]: ...

    def mark_stalled(self, run: SyncRun, message: str) -> bool: ...


class SqliteDestinationStore(BaseService):
    """Vehicle table writes and fingerprint lookups."""

    def upsert_batch(self, records: Sequence[VehicleRecord]) -> int:
        """Upsert ``records`` in one transaction; all or nothing."""
        if not records:
            return 0
        synced_at = iso_utcnow()
        return self._in_transaction(
            lambda conn: VehicleRepository(conn).upsert_many(records, synced_at)
        )

    def get_fingerprints(self, external_ids: Sequence[str]) -> dict[str, str]:
        if not external_ids:
            return {}
        return self._with_connection(
            lambda conn: VehicleRepository(conn).get_fingerprints(external_ids)
        )

    def count(self) -> int:
        return self._with_connection(lambda conn: VehicleRepository(conn).count())

    def get(self, external_id: str) -> dict[str, Any] | None:
        return self._with_connection(lambda conn: VehicleRepository(conn).get(external_id))


class SqliteProgressStore(BaseService):
    """Durable SyncRun checkpoints and the per-run error log."""

    def get_progress(self, run_id: str) -> SyncRun | None:
        row = self._with_connection(lambda conn: SyncRunRepository(conn).get(run_id))
        return SyncRun.from_dict(row) if row else None

    def get_latest(self) -> SyncRun | None:
        row = self._with_connection(lambda conn: SyncRunRepository(conn).get_latest())
        return SyncRun.from_dict(row) if row else None

    def list_runs(self, limit: int = 10) -> list[SyncRun]:
        rows = self._with_connection(lambda conn: SyncRunRepository(conn).list_recent(limit))
        return [SyncRun.from_dict(row) for row in rows]

    def save_progress(self, run: SyncRun) -> bool:
        """Persist ``run``; a checkpoint behind the stored one is rejected."""
        values = run.to_dict()
        saved = self._in_transaction(lambda conn: SyncRunRepository(conn).save(values))
        if not saved:
            self._logger.warning(
                "Rejected checkpoint for run %s at page %s: stored run is further along",
                run.run_id,
                run.current_page,
            )
        return saved

    def record_error(
        self,
        run_id: str,
        category: str,
        message: str,
        *,
        page: int | None = None,
        external_id: str | None = None,
    ) -> None:
        self._in_transaction(
            lambda conn: SyncErrorRepository(conn).add(
                run_id=run_id,
                category=category,
                message=message,
                page=page,
                external_id=external_id,
            )
        )

    def list_errors(self, run_id: str, limit: int = 20) -> list[dict[str, Any]]:
        return self._with_connection(
            lambda conn: SyncErrorRepository(conn).list_for_run(run_id, limit)
        )

    def mark_stalled(self, run: SyncRun, message: str) -> bool:
        """Flip a stalled ``running`` run to ``failed``.

        The update only applies if the stored run still shows the activity
        timestamp the caller saw, so a run that advanced in the meantime is
        left alone. Returns True when the row was updated.
        """
        return self._in_transaction(
            lambda conn: SyncRunRepository(conn).fail_if_unchanged(
                run.run_id, run.last_activity_at, message, "transient"
            )
        )
