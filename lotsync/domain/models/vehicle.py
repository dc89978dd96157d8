"""Vehicle listing model and the upstream → local transformation."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping

# Counters that change on every poll without the listing changing.
VOLATILE_FIELDS = frozenset({"views", "watchers", "time_left", "updated_at", "fetched_at"})


class MalformedRecordError(ValueError):
    """An upstream record cannot be transformed into a VehicleRecord."""

    def __init__(self, message: str, external_id: str | None = None) -> None:
        super().__init__(message)
        self.external_id = external_id


def _name(value: Any) -> str | None:
    """Upstream enumerations arrive either as ``{"name": ...}`` or as plain strings."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        value = value.get("name")
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def _as_int(value: Any, field_name: str, external_id: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError) as exc:
        raise MalformedRecordError(
            f"{field_name} is not numeric: {value!r}", external_id
        ) from exc


def _as_float(value: Any, field_name: str, external_id: str) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedRecordError(
            f"{field_name} is not numeric: {value!r}", external_id
        ) from exc


def _section(value: Any, key: str, field_name: str, external_id: str) -> Mapping[str, Any]:
    """Nested objects may be sent as a bare string naming their main field."""
    if not value:
        return {}
    if isinstance(value, Mapping):
        return value
    if isinstance(value, (str, int, float)):
        return {key: value}
    raise MalformedRecordError(
        f"{field_name} is not an object: {type(value).__name__}", external_id
    )


@dataclass
class VehicleRecord:
    """Normalized local representation of one upstream vehicle listing."""

    external_id: str
    make: str | None = None
    model: str | None = None
    year: int | None = None
    price: float | None = None
    mileage_km: int | None = None
    vin: str | None = None
    fuel: str | None = None
    transmission: str | None = None
    color: str | None = None
    body_type: str | None = None
    condition: str | None = None
    lot_number: str | None = None
    sale_status: str | None = None
    location_city: str | None = None
    location_state: str | None = None
    location_country: str | None = None
    damage_primary: str | None = None
    damage_secondary: str | None = None
    title_status: str | None = None
    auction_date: str | None = None
    bid_count: int | None = None
    images: list[str] = field(default_factory=list)
    raw_payload: dict[str, Any] = field(default_factory=dict, repr=False)
    content_fingerprint: str | None = None

    @property
    def image_count(self) -> int:
        return len(self.images)

    @property
    def title(self) -> str:
        parts = [str(p) for p in (self.year, self.make, self.model) if p]
        return " ".join(parts) or self.external_id

    def semantic_fields(self) -> dict[str, Any]:
        """Fields whose change means the listing changed.

        Excludes the raw payload (it carries volatile counters) and the
        fingerprint itself.
        """
        return {
            "make": self.make,
            "model": self.model,
            "year": self.year,
            "price": self.price,
            "mileage_km": self.mileage_km,
            "vin": self.vin,
            "fuel": self.fuel,
            "transmission": self.transmission,
            "color": self.color,
            "body_type": self.body_type,
            "condition": self.condition,
            "lot_number": self.lot_number,
            "sale_status": self.sale_status,
            "location": [self.location_city, self.location_state, self.location_country],
            "damage": [self.damage_primary, self.damage_secondary],
            "title_status": self.title_status,
            "auction_date": self.auction_date,
            "bid_count": self.bid_count,
            "images": list(self.images),
        }

    def to_row(self, synced_at: str) -> dict[str, Any]:
        """Return the column mapping used by the vehicles table."""
        row = {"external_id": self.external_id}
        for key, value in self.semantic_fields().items():
            if key not in ("location", "damage", "images"):
                row[key] = value
        row.update(
            location_city=self.location_city,
            location_state=self.location_state,
            location_country=self.location_country,
            damage_primary=self.damage_primary,
            damage_secondary=self.damage_secondary,
            images=json.dumps(self.images),
            image_count=self.image_count,
            raw_payload=json.dumps(self.raw_payload, default=str, sort_keys=True),
            content_fingerprint=self.content_fingerprint,
            first_seen_at=synced_at,
            last_synced_at=synced_at,
        )
        return row

    @classmethod
    def from_upstream(cls, payload: Mapping[str, Any]) -> "VehicleRecord":
        """Transform one upstream listing.

        Raises:
            MalformedRecordError: when the identifier is missing, a numeric
                field cannot be parsed or a nested field has the wrong shape.
        """
        if not isinstance(payload, Mapping):
            raise MalformedRecordError(f"record is not an object: {type(payload).__name__}")
        raw_id = payload.get("id", payload.get("external_id"))
        if raw_id is None or str(raw_id).strip() == "":
            raise MalformedRecordError("record has no id")
        external_id = str(raw_id).strip()

        lots = payload.get("lots") or []
        if not isinstance(lots, (list, tuple)):
            raise MalformedRecordError(f"lots is not a list: {type(lots).__name__}", external_id)
        lot = lots[0] if lots else {}
        if not isinstance(lot, Mapping):
            raise MalformedRecordError(f"lot is not an object: {type(lot).__name__}", external_id)

        price_raw = lot.get("buy_now") or lot.get("final_bid") or lot.get("bid") or payload.get("price")
        odometer = lot.get("odometer") or {}
        mileage_raw = odometer.get("km") if isinstance(odometer, Mapping) else odometer
        if mileage_raw is None:
            mileage_raw = payload.get("mileage")

        location = _section(lot.get("location") or payload.get("location"), "city", "location", external_id)
        damage = _section(lot.get("damage"), "main", "damage", external_id)

        images_raw = lot.get("images") or payload.get("images") or []
        if isinstance(images_raw, Mapping):
            images_raw = images_raw.get("normal") or images_raw.get("big") or []
        if not isinstance(images_raw, (list, tuple)):
            raise MalformedRecordError(
                f"images is not a list: {type(images_raw).__name__}", external_id
            )
        if any(url and not isinstance(url, str) for url in images_raw):
            raise MalformedRecordError("images holds a non-string entry", external_id)
        images = [url for url in images_raw if url]

        return cls(
            external_id=external_id,
            make=_name(payload.get("manufacturer") or payload.get("make")),
            model=_name(payload.get("model")),
            year=_as_int(payload.get("year"), "year", external_id),
            price=_as_float(price_raw, "price", external_id),
            mileage_km=_as_int(mileage_raw, "mileage", external_id),
            vin=_name(payload.get("vin")),
            fuel=_name(payload.get("fuel")),
            transmission=_name(payload.get("transmission")),
            color=_name(payload.get("color")),
            body_type=_name(payload.get("body_type")),
            condition=_name(lot.get("condition")),
            lot_number=_name(lot.get("lot")),
            sale_status=_name(lot.get("status")),
            location_city=_name(location.get("city")),
            location_state=_name(location.get("state")),
            location_country=_name(location.get("country")),
            damage_primary=_name(damage.get("main")),
            damage_secondary=_name(damage.get("second")),
            title_status=_name(lot.get("title") or payload.get("title_status")),
            auction_date=_name(lot.get("sale_date")),
            bid_count=_as_int(lot.get("bid_count"), "bid_count", external_id),
            images=images,
            raw_payload={k: v for k, v in payload.items() if k not in VOLATILE_FIELDS},
        )
