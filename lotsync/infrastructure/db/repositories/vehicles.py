from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from lotsync.domain.models import VehicleRecord

from .base import BaseRepository

# Stay well below SQLite's bound-parameter limit for IN (...) lookups.
_LOOKUP_CHUNK = 500

_COLUMNS = (
    "external_id",
    "make",
    "model",
    "year",
    "price",
    "mileage_km",
    "vin",
    "fuel",
    "transmission",
    "color",
    "body_type",
    "condition",
    "lot_number",
    "sale_status",
    "location_city",
    "location_state",
    "location_country",
    "damage_primary",
    "damage_secondary",
    "title_status",
    "auction_date",
    "bid_count",
    "images",
    "image_count",
    "raw_payload",
    "content_fingerprint",
    "first_seen_at",
    "last_synced_at",
)

# first_seen_at keeps its original value on conflict.
_UPDATE_COLUMNS = tuple(c for c in _COLUMNS if c not in ("external_id", "first_seen_at"))

_UPSERT_SQL = (
    f"INSERT INTO vehicles ({', '.join(_COLUMNS)}) "
    f"VALUES ({', '.join(':' + c for c in _COLUMNS)}) "
    "ON CONFLICT(external_id) DO UPDATE SET "
    + ", ".join(f"{c} = excluded.{c}" for c in _UPDATE_COLUMNS)
)


class VehicleRepository(BaseRepository):
    def upsert_many(self, records: Sequence[VehicleRecord], synced_at: str) -> int:
        """Insert or update ``records`` keyed on ``external_id``.

        Returns the number of records written. Does not commit.
        """
        if not records:
            return 0
        rows = []
        for record in records:
            if not record.content_fingerprint:
                raise ValueError(f"vehicle {record.external_id} has no content fingerprint")
            rows.append(record.to_row(synced_at))
        self._execute_many(_UPSERT_SQL, rows)
        return len(rows)

    def get_fingerprints(self, external_ids: Iterable[str]) -> dict[str, str]:
        ids = list(dict.fromkeys(external_ids))
        result: dict[str, str] = {}
        for start in range(0, len(ids), _LOOKUP_CHUNK):
            chunk = ids[start:start + _LOOKUP_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            rows = self._execute(
                "SELECT external_id, content_fingerprint FROM vehicles "
                f"WHERE external_id IN ({placeholders})",
                chunk,
            ).fetchall()
            result.update({row[0]: row[1] for row in rows if row[1]})
        return result

    def get(self, external_id: str) -> dict[str, Any] | None:
        return self._fetch_one_as_dict(
            "SELECT * FROM vehicles WHERE external_id = ?", (external_id,)
        )

    def count(self) -> int:
        return int(self._fetch_scalar("SELECT COUNT(*) FROM vehicles") or 0)
