from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Query, Session

from app.ordersync.constants import (
    LIST_HIDDEN_STATUSES,
    STATUS_COUNT_KEYS,
    SYNC_STATUS_ERROR,
    SYNC_STATUS_PENDING,
    SYNC_STATUS_SUCCESS,
)
from app.ordersync.modules.orders.changes import BLOB_FIELDS, COMPARED_FIELDS, DATE_FIELDS
from app.ordersync.modules.orders.models import Order
from app.ordersync.utils import (
    BlobError,
    business_day_bounds,
    canonical_json,
    parse_datetime,
    parse_json_blob,
    safe_text,
    to_naive_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


class InvalidOrderId(ValueError):
    """Upstream order id is missing or not a positive integer."""


def parse_order_id(value: Any) -> int:
    """
    Validate the upstream numeric id. Never falls back to the order number.
    """
    if isinstance(value, bool):
        raise InvalidOrderId(f"Invalid order id: {value!r}")
    if isinstance(value, int):
        oid = value
    else:
        text = safe_text(value)
        if not text.isdigit():
            raise InvalidOrderId(f"Invalid order id: {value!r}")
        oid = int(text)
    if oid <= 0:
        raise InvalidOrderId(f"Invalid order id: {value!r}")
    return oid


def _serialize_blob(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        # Stored as given when the text is not valid JSON.
        try:
            return canonical_json(parse_json_blob(value))
        except BlobError:
            return value
    return canonical_json(value)


def column_values(incoming: Mapping[str, Any], fields: list[str] | tuple[str, ...], *, tz: str) -> dict[str, Any]:
    """Column values for `fields`, converted from the incoming-order shape."""
    values: dict[str, Any] = {}
    for name in fields:
        if name not in incoming:
            continue
        value = incoming[name]
        if name in BLOB_FIELDS:
            value = _serialize_blob(value)
        elif name in DATE_FIELDS:
            value = to_naive_utc(parse_datetime(value), tz)
        values[name] = value
    return values


def upstream_updated_at(incoming: Mapping[str, Any], *, tz: str) -> datetime | None:
    return to_naive_utc(parse_datetime(incoming.get("updated_at")), tz)


def get_order_by_external_id(s: Session, external_id: str) -> Order | None:
    return s.query(Order).filter(Order.external_id == external_id).one_or_none()


def create_order_row(
    s: Session,
    incoming: Mapping[str, Any],
    *,
    quantity: int | float,
    tz: str = "Europe/Kyiv",
) -> Order:
    """Insert a full row for a first-seen upstream order."""
    now = utcnow()
    order_id = parse_order_id(incoming.get("id"))
    external_id = safe_text(incoming.get("external_id"))
    if not external_id:
        raise ValueError(f"Order {order_id} has no external id")

    values = column_values(incoming, COMPARED_FIELDS, tz=tz)
    values["quantity"] = quantity
    values.setdefault("status", "1")

    order = Order(
        id=order_id,
        external_id=external_id,
        order_number=safe_text(incoming.get("order_number")) or external_id,
        last_synced=now,
        sync_status=SYNC_STATUS_SUCCESS,
        sync_error=None,
        created_at=now,
        updated_at=upstream_updated_at(incoming, tz=tz) or now,
        **values,
    )
    s.add(order)
    s.flush()
    return order


def apply_changes(s: Session, order_id: int, values: Mapping[str, Any]) -> int:
    """
    Column-targeted UPDATE. Columns not in `values` are left untouched, so
    concurrent writes to other columns survive.
    """
    if not values:
        return 0
    res = s.execute(update(Order).where(Order.id == order_id).values(**values))
    return res.rowcount or 0


def mark_sync_error(s: Session, external_id: str, message: str) -> bool:
    res = s.execute(
        update(Order)
        .where(Order.external_id == external_id)
        .values(sync_status=SYNC_STATUS_ERROR, sync_error=(message or "")[:2000], last_synced=utcnow())
    )
    return bool(res.rowcount)


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _parsed_or_none(raw: Any, external_id: str, name: str) -> Any:
    try:
        return parse_json_blob(raw)
    except BlobError as e:
        logger.warning("ORDER: order=%s has unparseable %s: %s", external_id, name, e)
        return None


def order_to_dict(o: Order) -> dict[str, Any]:
    return {
        "id": o.id,
        "external_id": o.external_id,
        "order_number": o.order_number,
        "status": o.status,
        "status_text": o.status_text,
        "tracking_number": o.tracking_number,
        "quantity": o.quantity,
        "customer_name": o.customer_name,
        "customer_phone": o.customer_phone,
        "delivery_address": o.delivery_address,
        "total_price": o.total_price,
        "order_date": _iso(o.order_date),
        "shipping_method": o.shipping_method,
        "payment_method": o.payment_method,
        "city_name": o.city_name,
        "provider": o.provider,
        "channel": o.channel,
        "discount_reason": o.discount_reason,
        "items": _parsed_or_none(o.items, o.external_id, "items"),
        "raw_data": _parsed_or_none(o.raw_data, o.external_id, "raw_data"),
        "last_synced": _iso(o.last_synced),
        "sync_status": o.sync_status,
        "sync_error": o.sync_error,
        "created_at": _iso(o.created_at),
        "updated_at": _iso(o.updated_at),
    }


def get_order_with_derived_stats(s: Session, external_id: str) -> dict[str, Any] | None:
    """Order row plus its cache entry (None when not cached)."""
    from app.ordersync.modules.orders_cache.service import cache_to_dict, get_order_cache

    order = get_order_by_external_id(s, external_id)
    if order is None:
        return None
    cache = get_order_cache(s, external_id)
    return {
        "order": order_to_dict(order),
        "cache": cache_to_dict(cache) if cache else None,
    }


def get_status_counts(s: Session) -> dict[str, int]:
    rows = s.query(Order.status, func.count(Order.id)).group_by(Order.status).all()
    counts = {key: 0 for key in STATUS_COUNT_KEYS.values()}
    counts["other"] = 0
    total = 0
    for status, n in rows:
        key = STATUS_COUNT_KEYS.get(safe_text(status), "other")
        counts[key] += int(n)
        total += int(n)
    counts["total"] = total
    return counts


def get_sync_stats(s: Session) -> dict[str, Any]:
    rows = s.query(Order.sync_status, func.count(Order.id)).group_by(Order.sync_status).all()
    by_status = {safe_text(k): int(n) for k, n in rows}
    total = sum(by_status.values())
    success = by_status.get(SYNC_STATUS_SUCCESS, 0)
    last_synced = s.query(func.max(Order.last_synced)).scalar()
    return {
        "total_orders": total,
        "synced_orders": success,
        "pending_orders": by_status.get(SYNC_STATUS_PENDING, 0),
        "error_orders": by_status.get(SYNC_STATUS_ERROR, 0),
        "last_sync_time": _iso(last_synced),
        "success_rate": round(success / total * 100, 1) if total else 0.0,
    }


SORT_COLUMNS = {
    "order_date": Order.order_date,
    "created_at": Order.created_at,
    "updated_at": Order.updated_at,
    "last_synced": Order.last_synced,
    "order_number": Order.order_number,
    "status": Order.status,
    "total_price": Order.total_price,
}


def _day(value: date | str, name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(safe_text(value)[:10])
    except ValueError:
        raise ValueError(f"{name} must be YYYY-MM-DD, got {value!r}") from None


def _filtered(
    s: Session,
    *,
    status: str | list[str] | tuple[str, ...] | None,
    sync_status: str | None,
    search: str | None,
    date_range: tuple[date | str, date | str] | None,
    tz: str,
) -> Query:
    q = s.query(Order)
    if status:
        statuses = [status] if isinstance(status, str) else list(status)
        q = q.filter(Order.status.in_([safe_text(x) for x in statuses]))
    else:
        q = q.filter(Order.status.notin_(sorted(LIST_HIDDEN_STATUSES)))
    if sync_status:
        q = q.filter(Order.sync_status == sync_status)
    term = safe_text(search)
    if term:
        like = f"%{term}%"
        q = q.filter(or_(Order.order_number.ilike(like), Order.tracking_number.ilike(like)))
    if date_range is not None:
        start, end = _day(date_range[0], "date_from"), _day(date_range[1], "date_to")
        if end < start:
            raise ValueError("Invalid date range: date_from must not be after date_to")
        lo, hi = business_day_bounds(start, end, tz)
        q = q.filter(Order.order_date >= lo, Order.order_date <= hi)
    return q


def list_orders(
    s: Session,
    *,
    status: str | list[str] | tuple[str, ...] | None = None,
    sync_status: str | None = None,
    search: str | None = None,
    date_range: tuple[date | str, date | str] | None = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    limit: int = 100,
    offset: int = 0,
    tz: str = "Europe/Kyiv",
) -> list[Order]:
    """
    Filtered, sorted page of orders.

    No `status` means every status except rejected, returned and deleted.
    `search` matches the order number or tracking number (substring,
    case-insensitive). `date_range` is an inclusive pair of business days
    on `order_date`.
    """
    column = SORT_COLUMNS.get(sort_by)
    if column is None:
        raise ValueError(f"sort_by must be one of {', '.join(SORT_COLUMNS)}")
    if sort_order not in ("asc", "desc"):
        raise ValueError("sort_order must be asc or desc")
    if limit < 1 or offset < 0:
        raise ValueError("limit must be >= 1 and offset >= 0")

    q = _filtered(s, status=status, sync_status=sync_status, search=search, date_range=date_range, tz=tz)
    if sort_order == "asc":
        q = q.order_by(column.asc(), Order.id.asc())
    else:
        q = q.order_by(column.desc(), Order.id.desc())
    return q.limit(limit).offset(offset).all()


def count_orders(
    s: Session,
    *,
    status: str | list[str] | tuple[str, ...] | None = None,
    sync_status: str | None = None,
    search: str | None = None,
    date_range: tuple[date | str, date | str] | None = None,
    tz: str = "Europe/Kyiv",
) -> int:
    """Total rows matching the `list_orders` filters, for pagination."""
    q = _filtered(s, status=status, sync_status=sync_status, search=search, date_range=date_range, tz=tz)
    return q.order_by(None).count()
