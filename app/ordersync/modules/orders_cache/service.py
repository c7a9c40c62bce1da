from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.ordersync.constants import CACHE_VERSION
from app.ordersync.modules.catalog.service import Catalog
from app.ordersync.modules.orders.models import Order
from app.ordersync.modules.orders.quantities import Aggregates, compute_aggregates
from app.ordersync.modules.orders_cache.models import OrderCache
from app.ordersync.utils import BlobError, parse_json_blob, utcnow

logger = logging.getLogger(__name__)


def get_order_cache(s: Session, external_id: str) -> OrderCache | None:
    return s.query(OrderCache).filter(OrderCache.external_id == external_id).one_or_none()


def get_multiple_order_caches(s: Session, external_ids: list[str]) -> dict[str, OrderCache]:
    """Bulk fetch; ids without a cache row are absent from the result."""
    out: dict[str, OrderCache] = {}
    ids = list(dict.fromkeys(external_ids))
    # Keep IN lists well under driver parameter limits.
    for i in range(0, len(ids), 500):
        chunk = ids[i : i + 500]
        for c in s.query(OrderCache).filter(OrderCache.external_id.in_(chunk)).all():
            out[c.external_id] = c
    return out


def has_order_cache(s: Session, external_id: str) -> bool:
    return s.query(OrderCache.id).filter(OrderCache.external_id == external_id).first() is not None


def get_cached_external_ids(s: Session) -> list[str]:
    return [row[0] for row in s.query(OrderCache.external_id).order_by(OrderCache.external_id.asc()).all()]


def parse_processed_items(cache: OrderCache) -> list[dict[str, Any]] | None:
    try:
        value = parse_json_blob(cache.processed_items)
    except BlobError as e:
        logger.warning("CACHE: order=%s has unparseable processed_items: %s", cache.external_id, e)
        return None
    return value if isinstance(value, list) else None


def get_order_cache_items(s: Session, external_id: str) -> list[dict[str, Any]]:
    cache = get_order_cache(s, external_id)
    if cache is None:
        return []
    return parse_processed_items(cache) or []


def upsert_order_cache(
    s: Session,
    *,
    external_id: str,
    processed_items: str,
    total_quantity: float,
    total_weight: float,
) -> OrderCache:
    """
    Create or wholesale-replace the cache row for one order.
    """
    now = utcnow()
    values = {
        "processed_items": processed_items,
        "total_quantity": total_quantity,
        "total_weight": total_weight,
        "cache_version": CACHE_VERSION,
        "cache_updated_at": now,
        "updated_at": now,
    }

    cache = get_order_cache(s, external_id)
    if cache is None:
        try:
            # SAVEPOINT: a concurrent insert for the same order falls through to the update below.
            with s.begin_nested():
                cache = OrderCache(external_id=external_id, created_at=now, **values)
                s.add(cache)
                s.flush()
            return cache
        except IntegrityError:
            cache = get_order_cache(s, external_id)
            if cache is None:
                raise

    for k, v in values.items():
        setattr(cache, k, v)
    s.flush()
    return cache


def invalidate_order_cache(s: Session, external_id: str) -> bool:
    """Drop the cache row; the next validation run rebuilds it as a miss."""
    res = s.execute(delete(OrderCache).where(OrderCache.external_id == external_id))
    deleted = bool(res.rowcount)
    logger.info("CACHE: invalidate order=%s deleted=%s", external_id, deleted)
    return deleted


def get_cache_statistics(s: Session) -> dict[str, Any]:
    total = s.query(func.count(OrderCache.id)).scalar() or 0
    now = utcnow()
    ages = [
        (now - row[0]).total_seconds()
        for row in s.query(OrderCache.cache_updated_at).limit(1000).all()
        if row[0] is not None
    ]
    size = s.query(func.coalesce(func.sum(func.length(OrderCache.processed_items)), 0)).scalar() or 0
    return {
        "total_entries": int(total),
        "average_age_hours": round(sum(ages) / len(ages) / 3600) if ages else 0,
        "total_processed_items_size": int(size),
    }


def build_cache_for_order(
    s: Session,
    order: Order,
    catalog: Catalog,
    *,
    virtual_warehouse_id: str | None,
) -> tuple[OrderCache, Aggregates] | None:
    """
    Recompute the cache row from the order's current items. An order with
    no items gets an empty row with zero totals. None when the items blob
    cannot be parsed or is not a list.
    """
    try:
        items = parse_json_blob(order.items)
    except BlobError as e:
        logger.warning("CACHE: order=%s items unparseable, cache not rebuilt: %s", order.external_id, e)
        return None
    if items is None:
        items = []
    if not isinstance(items, list):
        logger.warning("CACHE: order=%s items are not a list, cache not rebuilt", order.external_id)
        return None

    agg = compute_aggregates(items, catalog, virtual_warehouse_id=virtual_warehouse_id)
    cache = upsert_order_cache(
        s,
        external_id=order.external_id,
        processed_items=agg.serialized_stats(),
        total_quantity=agg.total_quantity,
        total_weight=agg.total_weight_kg,
    )
    logger.debug(
        "CACHE: order=%s skus=%d total_quantity=%s total_weight=%s",
        order.external_id,
        len(agg.stats),
        agg.total_quantity,
        agg.total_weight_kg,
    )
    return cache, agg


def recompute_cache_for(
    s: Session,
    external_id: str,
    catalog: Catalog,
    *,
    virtual_warehouse_id: str | None = "2",
) -> bool:
    """Single-order on-demand repair. False when the order is unknown or its items blob is malformed."""
    order = s.query(Order).filter(Order.external_id == external_id).one_or_none()
    if order is None:
        logger.warning("CACHE: recompute requested for unknown order=%s", external_id)
        return False
    return build_cache_for_order(s, order, catalog, virtual_warehouse_id=virtual_warehouse_id) is not None


def cache_to_dict(c: OrderCache) -> dict[str, Any]:
    return {
        "external_id": c.external_id,
        "processed_items": parse_processed_items(c),
        "total_quantity": c.total_quantity,
        "total_weight": c.total_weight,
        "cache_version": c.cache_version,
        "cache_updated_at": c.cache_updated_at.isoformat() if c.cache_updated_at else None,
        "created_at": c.created_at.isoformat() if c.created_at else None,
        "updated_at": c.updated_at.isoformat() if c.updated_at else None,
    }
