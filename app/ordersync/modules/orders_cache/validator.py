from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

import pytz

from app.ordersync.batching import run_in_waves
from app.ordersync.constants import FULL_VALIDATION_LOOKBACK_DAYS
from app.ordersync.db import SessionFactory, unit_of_work
from app.ordersync.modules.catalog.service import CachedCatalog, Catalog, DbCatalog
from app.ordersync.modules.orders.models import Order
from app.ordersync.modules.orders.quantities import (
    canonical_quantities,
    compute_aggregates,
    quantities_from_stats,
)
from app.ordersync.modules.orders_cache.models import OrderCache
from app.ordersync.modules.orders_cache.service import (
    build_cache_for_order,
    get_multiple_order_caches,
    parse_processed_items,
)
from app.ordersync.utils import BlobError, business_day_bounds, parse_json_blob

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    mode: str
    start_date: str
    end_date: str
    processed: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    stale_by_date_but_unchanged: int = 0
    cache_stale: int = 0
    updated: int = 0
    errors: int = 0
    cancelled: bool = False
    dry_run: bool = False
    to_update: list[str] = field(default_factory=list)
    error_details: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _as_date(value: date | str | None, name: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValueError(f"{name} must be YYYY-MM-DD, got {value!r}") from None


def resolve_range(
    start_date: date | str | None,
    end_date: date | str | None,
    *,
    tz: str,
    today: date | None = None,
) -> tuple[str, date, date]:
    """
    Inclusive business-day range to validate. No start date means the
    full window (the last 365 days).
    """
    today = today or datetime.now(pytz.timezone(tz)).date()
    start = _as_date(start_date, "start_date")
    end = _as_date(end_date, "end_date")
    if start is None:
        if end is not None:
            raise ValueError("end_date requires start_date")
        return "full", today - timedelta(days=FULL_VALIDATION_LOOKBACK_DAYS), today
    end = end or today
    if end < start:
        raise ValueError("Invalid date range: start_date must not be after end_date")
    return "period", start, end


class CacheValidator:
    """
    Finds orders whose cache rows are missing or stale and rebuilds them.

    An order newer than its cache is only rebuilt when its kit-expanded
    per-SKU quantities differ from what the cache holds; upstream re-saves
    that merely bump `updated_at` are counted as stale-by-date-but-unchanged.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        catalog_factory: Callable[[], Catalog] | None = None,
        *,
        virtual_warehouse_id: str | None = "2",
        tz: str = "Europe/Kyiv",
        batch_size: int = 50,
        concurrency: int = 1,
        max_workers: int = 4,
        pause_seconds: float = 0.5,
    ) -> None:
        self.session_factory = session_factory
        self.catalog_factory = catalog_factory or (lambda: DbCatalog(session_factory))
        self.virtual_warehouse_id = virtual_warehouse_id
        self.tz = tz
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.max_workers = max_workers
        self.pause_seconds = pause_seconds

    def _items_unchanged(self, order: Order, cache: OrderCache, catalog: Catalog) -> bool:
        try:
            items = parse_json_blob(order.items)
        except BlobError:
            return False
        if items is None:
            items = []
        if not isinstance(items, list):
            return False
        cached = quantities_from_stats(parse_processed_items(cache))
        if cached is None:
            return False
        current = compute_aggregates(items, catalog, virtual_warehouse_id=self.virtual_warehouse_id)
        return canonical_quantities(current.quantities_by_sku()) == canonical_quantities(cached)

    def _classify(self, result: ValidationResult, lo: datetime, hi: datetime, force: bool, catalog: Catalog) -> None:
        s = self.session_factory()
        try:
            orders = (
                s.query(Order)
                .filter(Order.order_date >= lo, Order.order_date <= hi)
                .order_by(Order.order_date.desc())
                .all()
            )
            caches = get_multiple_order_caches(s, [o.external_id for o in orders])
            logger.info("CACHE VALIDATION: %d orders in range, %d cached", len(orders), len(caches))

            for o in orders:
                result.processed += 1
                if force:
                    result.to_update.append(o.external_id)
                    continue
                try:
                    cache = caches.get(o.external_id)
                    if cache is None:
                        result.cache_misses += 1
                        result.to_update.append(o.external_id)
                        logger.debug("CACHE VALIDATION: order=%s cache missing", o.external_id)
                    elif o.updated_at is None or o.updated_at <= cache.cache_updated_at:
                        result.cache_hits += 1
                    elif self._items_unchanged(o, cache, catalog):
                        result.stale_by_date_but_unchanged += 1
                        logger.debug("CACHE VALIDATION: order=%s newer but items unchanged", o.external_id)
                    else:
                        result.cache_stale += 1
                        result.to_update.append(o.external_id)
                        logger.debug("CACHE VALIDATION: order=%s items changed", o.external_id)
                except Exception as e:
                    logger.exception("CACHE VALIDATION: order=%s classification failed", o.external_id)
                    result.errors += 1
                    result.error_details.append({"external_id": o.external_id, "error": str(e)})
        finally:
            s.close()

    def _rebuild(self, external_id: str, catalog: Catalog) -> dict[str, str]:
        with unit_of_work(self.session_factory) as s:
            order = s.query(Order).filter(Order.external_id == external_id).one_or_none()
            if order is None:
                return {"external_id": external_id, "action": "error", "error": "order not found"}
            built = build_cache_for_order(s, order, catalog, virtual_warehouse_id=self.virtual_warehouse_id)
            if built is None:
                return {"external_id": external_id, "action": "error", "error": "items unparseable"}
        return {"external_id": external_id, "action": "updated"}

    def validate(
        self,
        *,
        start_date: date | str | None = None,
        end_date: date | str | None = None,
        force: bool = False,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> ValidationResult:
        mode, start, end = resolve_range(start_date, end_date, tz=self.tz)
        lo, hi = business_day_bounds(start, end, self.tz)
        result = ValidationResult(mode=mode, start_date=start.isoformat(), end_date=end.isoformat(), dry_run=dry_run)
        catalog = CachedCatalog(self.catalog_factory())

        self._classify(result, lo, hi, force, catalog)
        logger.info(
            "CACHE VALIDATION: mode=%s processed=%d hits=%d misses=%d stale=%d unchanged=%d to_update=%d",
            mode,
            result.processed,
            result.cache_hits,
            result.cache_misses,
            result.cache_stale,
            result.stale_by_date_but_unchanged,
            len(result.to_update),
        )
        if dry_run or not result.to_update:
            return result

        def on_error(external_id: str, exc: BaseException) -> dict[str, str]:
            return {"external_id": external_id, "action": "error", "error": str(exc)}

        run = run_in_waves(
            result.to_update,
            lambda external_id: self._rebuild(external_id, catalog),
            on_error=on_error,
            batch_size=self.batch_size,
            concurrency=self.concurrency,
            max_workers=self.max_workers,
            pause_seconds=self.pause_seconds,
            cancel_event=cancel_event,
            label="CACHE VALIDATION",
        )
        result.cancelled = run.cancelled
        for r in run.results:
            if r["action"] == "updated":
                result.updated += 1
            else:
                result.errors += 1
                result.error_details.append({"external_id": r["external_id"], "error": r.get("error", "")})

        logger.info("CACHE VALIDATION: updated=%d errors=%d cancelled=%s", result.updated, result.errors, result.cancelled)
        return result


def validator_from_config(session_factory: SessionFactory, config: Mapping[str, Any]) -> CacheValidator:
    return CacheValidator(
        session_factory,
        virtual_warehouse_id=config.get("VIRTUAL_WAREHOUSE_ID", "2"),
        tz=config.get("BUSINESS_TIMEZONE", "Europe/Kyiv"),
        batch_size=int(config.get("SYNC_BATCH_SIZE", 50)),
        max_workers=int(config.get("SYNC_MAX_WORKERS", 4)),
        pause_seconds=float(config.get("CACHE_WAVE_PAUSE_SECONDS", 0.5)),
    )
