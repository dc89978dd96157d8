"""Content fingerprints used to skip writes for unchanged listings."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Any

from lotsync.domain.models import VehicleRecord


def _hash_payload(payload: Mapping[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, default=str, ensure_ascii=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def fingerprint(record: VehicleRecord) -> str:
    """Deterministic hash of the record's semantic content.

    Volatile counters (views, watchers, time left) are not part of the
    semantic fields, so they never cause a rewrite.
    """
    return _hash_payload(record.semantic_fields())


def has_changed(existing: str | None, new: str) -> bool:
    """A record with no stored fingerprint is always treated as changed."""
    if not existing:
        return True
    return existing != new


class ChangeDetector:
    """Stamp fingerprints on records and drop the unchanged ones."""

    def stamp(self, records: Iterable[VehicleRecord]) -> list[VehicleRecord]:
        stamped = []
        for record in records:
            record.content_fingerprint = fingerprint(record)
            stamped.append(record)
        return stamped

    def filter_changed(
        self,
        records: Iterable[VehicleRecord],
        existing_fingerprints: Mapping[str, str],
    ) -> tuple[list[VehicleRecord], int]:
        """Return ``(changed_records, unchanged_count)``.

        Duplicate ids within one page keep the last occurrence.
        """
        latest: dict[str, VehicleRecord] = {}
        for record in self.stamp(records):
            latest[record.external_id] = record
        changed: list[VehicleRecord] = []
        unchanged = 0
        for external_id, record in latest.items():
            if has_changed(existing_fingerprints.get(external_id), record.content_fingerprint or ""):
                changed.append(record)
            else:
                unchanged += 1
        return changed, unchanged
