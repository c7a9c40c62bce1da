from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from app.ordersync.utils import BlobError, business_day, canonical_blob

SCALAR_FIELDS = (
    "status",
    "status_text",
    "tracking_number",
    "quantity",
    "customer_name",
    "customer_phone",
    "delivery_address",
    "total_price",
    "shipping_method",
    "payment_method",
    "city_name",
    "provider",
    "channel",
    "discount_reason",
)
DATE_FIELDS = ("order_date",)
BLOB_FIELDS = ("items", "raw_data")

COMPARED_FIELDS = SCALAR_FIELDS + DATE_FIELDS + BLOB_FIELDS


@dataclass
class ChangeSet:
    fields: list[str] = field(default_factory=list)
    details: dict[str, dict[str, Any]] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.fields)

    def __contains__(self, name: str) -> bool:
        return name in self.details

    def add(self, name: str, old: Any, new: Any) -> None:
        self.fields.append(name)
        self.details[name] = {"oldValue": old, "newValue": new}


def _stored(stored: Any, name: str) -> Any:
    if isinstance(stored, Mapping):
        return stored.get(name)
    return getattr(stored, name, None)


def _blob_equal(old: Any, new: Any) -> bool:
    try:
        return canonical_blob(old) == canonical_blob(new)
    except BlobError:
        # Cannot compare; treat as changed so the order gets re-synced.
        return False


def detect_changes(stored: Any, incoming: Mapping[str, Any], *, tz: str = "Europe/Kyiv") -> ChangeSet:
    """
    Fields of `incoming` that differ from the stored order.

    `stored` is an Order row or a mapping with the same attribute names.
    Keys missing from `incoming` are never reported. `order_date` is
    compared by calendar day in `tz` (stored naive values are UTC, incoming
    naive values are business-local). `items` and `raw_data` are compared by
    canonical JSON; a side that cannot be parsed or serialized counts as a
    change.
    """
    changes = ChangeSet()

    for name in SCALAR_FIELDS:
        if name not in incoming:
            continue
        old, new = _stored(stored, name), incoming[name]
        if old != new:
            changes.add(name, old, new)

    for name in DATE_FIELDS:
        if name not in incoming:
            continue
        old, new = _stored(stored, name), incoming[name]
        if business_day(old, tz, naive_is_utc=True) != business_day(new, tz):
            changes.add(name, old, new)

    for name in BLOB_FIELDS:
        if name not in incoming:
            continue
        old, new = _stored(stored, name), incoming[name]
        if not _blob_equal(old, new):
            changes.add(name, old, new)

    return changes
