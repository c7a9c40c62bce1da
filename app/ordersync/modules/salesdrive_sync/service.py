from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from app.ordersync.audit import record_order_history
from app.ordersync.batching import run_in_waves
from app.ordersync.constants import HISTORY_TRACKED_FIELDS, SOURCE_SALESDRIVE, SYNC_STATUS_SUCCESS
from app.ordersync.db import SessionFactory, unit_of_work
from app.ordersync.modules.catalog.service import CachedCatalog, Catalog, DbCatalog
from app.ordersync.modules.orders.changes import COMPARED_FIELDS, detect_changes
from app.ordersync.modules.orders.quantities import compute_aggregates
from app.ordersync.modules.orders.service import (
    InvalidOrderId,
    apply_changes,
    column_values,
    create_order_row,
    get_order_by_external_id,
    mark_sync_error,
    parse_order_id,
    upstream_updated_at,
)
from app.ordersync.modules.orders_cache.service import build_cache_for_order, invalidate_order_cache
from app.ordersync.modules.salesdrive_sync.client import SalesDriveClient, SalesDriveError
from app.ordersync.modules.salesdrive_sync.models import SyncHistory
from app.ordersync.modules.salesdrive_sync.parsers import format_order, status_text
from app.ordersync.utils import as_number, canonical_json, parse_json_list, safe_text, utcnow

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"
ERROR = "error"


@dataclass
class OrderResult:
    external_id: str
    action: str
    changed_fields: list[str] = field(default_factory=list)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    cache_updated: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BatchResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    cancelled: bool = False
    not_started: int = 0
    results: list[OrderResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    def add(self, r: OrderResult) -> None:
        self.results.append(r)
        if r.action == CREATED:
            self.created += 1
        elif r.action == UPDATED:
            self.updated += 1
        elif r.action == SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1

    def summary(self) -> dict[str, int]:
        return {"created": self.created, "updated": self.updated, "skipped": self.skipped, "errors": self.errors}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = self.summary()
        out["total"] = self.total
        out["cancelled"] = self.cancelled
        out["not_started"] = self.not_started
        out["results"] = [r.to_dict() for r in self.results]
        return out


class OrderReconciler:
    """
    Brings local order rows in line with a batch of incoming upstream orders.

    Each order runs in its own unit of work: create, skip, or a partial
    update of exactly the changed columns. The cache row is recomputed
    afterwards in a separate unit of work, best-effort.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        catalog_factory: Callable[[], Catalog] | None = None,
        *,
        tz: str = "Europe/Kyiv",
        virtual_warehouse_id: str | None = "2",
        max_workers: int = 4,
        pause_seconds: float = 0.1,
        source: str = SOURCE_SALESDRIVE,
    ) -> None:
        self.session_factory = session_factory
        self.catalog_factory = catalog_factory or (lambda: DbCatalog(session_factory))
        self.tz = tz
        self.virtual_warehouse_id = virtual_warehouse_id
        self.max_workers = max_workers
        self.pause_seconds = pause_seconds
        self.source = source

    def _effective(
        self, incoming: Mapping[str, Any], catalog: Catalog, *, creating: bool
    ) -> tuple[dict[str, Any], list[str]]:
        """
        Incoming record with `quantity` filled from the items when the upstream
        count is zero or negative. An absent count is filled only for a new row;
        on update a field the record does not carry is left alone.
        """
        out = dict(incoming)
        q = as_number(out.get("quantity"))
        if q and q > 0:
            return out, []
        if "quantity" not in out and not creating:
            return out, []
        items = out.get("items")
        if isinstance(items, str):
            items = parse_json_list(items)
        agg = compute_aggregates(items or [], catalog, virtual_warehouse_id=self.virtual_warehouse_id)
        out["quantity"] = int(round(agg.total_quantity))
        return out, agg.warnings

    def _mark_error(self, external_id: str, message: str) -> None:
        if not external_id:
            return
        try:
            with unit_of_work(self.session_factory) as s:
                mark_sync_error(s, external_id, message)
        except Exception:
            logger.exception("SYNC: order=%s could not record sync error", external_id)

    def _drop_stale_cache(self, external_id: str) -> None:
        # A cache row older than the committed items would otherwise read as a hit.
        try:
            with unit_of_work(self.session_factory) as s:
                invalidate_order_cache(s, external_id)
        except Exception:
            logger.exception("SYNC: order=%s stale cache row could not be dropped", external_id)

    def _refresh_cache(self, result: OrderResult, catalog: Catalog) -> None:
        try:
            with unit_of_work(self.session_factory) as s:
                order = get_order_by_external_id(s, result.external_id)
                built = None
                if order is not None:
                    built = build_cache_for_order(s, order, catalog, virtual_warehouse_id=self.virtual_warehouse_id)
        except Exception as e:
            logger.exception("SYNC: order=%s cache recompute failed", result.external_id)
            result.cache_updated = False
            result.warnings.append(f"cache recompute failed: {e}")
            self._drop_stale_cache(result.external_id)
            return
        result.cache_updated = built is not None
        if built is None:
            self._drop_stale_cache(result.external_id)
            return
        for w in built[1].warnings:
            if w not in result.warnings:
                result.warnings.append(w)

    def process_order(self, incoming: Mapping[str, Any], catalog: Catalog, *, force_update: bool = False) -> OrderResult:
        external_id = safe_text(incoming.get("external_id"))
        result = OrderResult(external_id=external_id, action=ERROR)
        items_written = False
        try:
            if not external_id:
                raise ValueError("incoming order has no external_id")
            with unit_of_work(self.session_factory) as s:
                existing = get_order_by_external_id(s, external_id)
                data, warnings = self._effective(incoming, catalog, creating=existing is None)
                result.warnings.extend(warnings)

                if existing is None:
                    order = create_order_row(s, data, quantity=data.get("quantity") or 0, tz=self.tz)
                    record_order_history(
                        s,
                        order_id=order.id,
                        status=order.status,
                        status_text=order.status_text,
                        source=self.source,
                        notes="Created from upstream sync",
                    )
                    result.action = CREATED
                    items_written = True
                    logger.info("SYNC: order=%s created id=%s", external_id, order.id)
                else:
                    if "id" in data and parse_order_id(data["id"]) != existing.id:
                        raise InvalidOrderId(
                            f"order {external_id} id mismatch: stored {existing.id}, incoming {data['id']!r}"
                        )
                    changes = detect_changes(existing, data, tz=self.tz)
                    result.changed_fields = list(changes.fields)

                    if not changes and not force_update:
                        result.action = SKIPPED
                        logger.debug("SYNC: order=%s skipped, no changes", external_id)
                        return result

                    fields = [f for f in COMPARED_FIELDS if f in data] if force_update else changes.fields
                    values = column_values(data, fields, tz=self.tz)
                    values.update(last_synced=utcnow(), sync_status=SYNC_STATUS_SUCCESS, sync_error=None)
                    updated_at = upstream_updated_at(data, tz=self.tz)
                    if updated_at is not None:
                        values["updated_at"] = updated_at
                    apply_changes(s, existing.id, values)

                    if HISTORY_TRACKED_FIELDS.intersection(changes.fields):
                        status = safe_text(data.get("status")) or existing.status
                        if "status_text" in data:
                            text = data["status_text"]
                        elif status != existing.status:
                            text = status_text(status)
                        else:
                            text = existing.status_text
                        record_order_history(
                            s,
                            order_id=existing.id,
                            status=status,
                            status_text=text,
                            source=self.source,
                            notes="Sync update: " + ", ".join(changes.fields),
                        )
                    result.action = UPDATED
                    items_written = "items" in changes or (force_update and "items" in data)
                    logger.info(
                        "SYNC: order=%s updated fields=%s%s",
                        external_id,
                        ",".join(changes.fields) or "-",
                        " (forced)" if force_update else "",
                    )
        except Exception as e:
            logger.exception("SYNC: FAILED order=%s", external_id or "?")
            result.action = ERROR
            result.error = f"{type(e).__name__}: {e}"
            self._mark_error(external_id, result.error)
            return result

        if items_written:
            self._refresh_cache(result, catalog)
        return result

    def reconcile(
        self,
        orders: Sequence[Mapping[str, Any]],
        *,
        batch_size: int = 50,
        concurrency: int = 3,
        force_update: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        catalog = CachedCatalog(self.catalog_factory())
        logger.info(
            "SYNC: reconcile %d orders (batch=%d, concurrency=%d, force=%s)",
            len(orders),
            batch_size,
            concurrency,
            force_update,
        )

        def on_error(incoming: Mapping[str, Any], exc: BaseException) -> OrderResult:
            return OrderResult(external_id=safe_text(incoming.get("external_id")), action=ERROR, error=str(exc))

        run = run_in_waves(
            list(orders),
            lambda incoming: self.process_order(incoming, catalog, force_update=force_update),
            on_error=on_error,
            batch_size=batch_size,
            concurrency=concurrency,
            max_workers=self.max_workers,
            pause_seconds=self.pause_seconds,
            cancel_event=cancel_event,
            label="SYNC",
        )
        out = BatchResult(cancelled=run.cancelled, not_started=run.not_started)
        for r in run.results:
            out.add(r)
        logger.info(
            "SYNC: done created=%d updated=%d skipped=%d errors=%d cancelled=%s catalog_hits=%d",
            out.created,
            out.updated,
            out.skipped,
            out.errors,
            out.cancelled,
            catalog.hits,
        )
        return out


def reconciler_from_config(session_factory: SessionFactory, config: Mapping[str, Any]) -> OrderReconciler:
    return OrderReconciler(
        session_factory,
        tz=config.get("BUSINESS_TIMEZONE", "Europe/Kyiv"),
        virtual_warehouse_id=config.get("VIRTUAL_WAREHOUSE_ID", "2"),
        max_workers=int(config.get("SYNC_MAX_WORKERS", 4)),
        pause_seconds=float(config.get("SYNC_WAVE_PAUSE_SECONDS", 0.1)),
    )


def client_from_config(config: Mapping[str, Any]) -> SalesDriveClient:
    api_url = safe_text(config.get("SALESDRIVE_API_URL"))
    api_key = safe_text(config.get("SALESDRIVE_API_KEY"))
    if not api_url or not api_key:
        raise ValueError("SALESDRIVE_API_URL and SALESDRIVE_API_KEY are required.")
    return SalesDriveClient(api_url=api_url, api_key=api_key, form_key=safe_text(config.get("SALESDRIVE_FORM_KEY")))


def history_to_dict(h: SyncHistory) -> dict[str, Any]:
    return {
        "id": h.id,
        "created_at": h.created_at.isoformat() if h.created_at else None,
        "sync_type": h.sync_type,
        "start_date": h.start_date,
        "end_date": h.end_date,
        "total_orders": h.total_orders,
        "new_orders": h.new_orders,
        "updated_orders": h.updated_orders,
        "skipped_orders": h.skipped_orders,
        "errors": h.errors,
        "duration_seconds": h.duration_seconds,
        "status": h.status,
        "error_message": h.error_message,
    }


def _record_run(session_factory: SessionFactory, **fields: Any) -> dict[str, Any]:
    with unit_of_work(session_factory) as s:
        row = SyncHistory(**fields)
        s.add(row)
        s.flush()
        return history_to_dict(row)


def run_sync(
    session_factory: SessionFactory,
    client: SalesDriveClient,
    *,
    start_date: str,
    end_date: str | None = None,
    sync_type: str = "manual",
    force_update: bool = False,
    reconciler: OrderReconciler | None = None,
    batch_size: int = 50,
    concurrency: int = 3,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """
    Pull orders from the upstream feed and reconcile them.

    Always writes one SyncHistory row. Fetch failures are recorded as a
    failed run and re-raised; per-order failures make the run partial.
    """
    reconciler = reconciler or OrderReconciler(session_factory)
    started = time.time()

    try:
        raw_orders = client.fetch_orders_since(start_date, end_date)
    except SalesDriveError as e:
        logger.error("SYNC: fetch failed %s..%s err=%s", start_date, end_date or "now", e)
        _record_run(
            session_factory,
            sync_type=sync_type,
            start_date=start_date,
            end_date=end_date,
            duration_seconds=round(time.time() - started, 3),
            status="failed",
            error_message=str(e)[:2000],
        )
        raise

    incoming: list[dict[str, Any]] = []
    rejected: list[OrderResult] = []
    for raw in raw_orders:
        try:
            incoming.append(format_order(raw))
        except InvalidOrderId as e:
            ref = safe_text(raw.get("externalId")) or safe_text(raw.get("id")) or "?"
            logger.warning("SYNC: order=%s rejected: %s", ref, e)
            rejected.append(OrderResult(external_id=ref, action=ERROR, error=str(e)))

    result = reconciler.reconcile(
        incoming,
        batch_size=batch_size,
        concurrency=concurrency,
        force_update=force_update,
        cancel_event=cancel_event,
    )
    for r in rejected:
        result.add(r)

    status = "success" if result.errors == 0 and not result.cancelled else "partial"
    failures = [r.to_dict() for r in result.results if r.action == ERROR][:100]
    history = _record_run(
        session_factory,
        sync_type=sync_type,
        start_date=start_date,
        end_date=end_date,
        total_orders=len(raw_orders),
        new_orders=result.created,
        updated_orders=result.updated,
        skipped_orders=result.skipped,
        errors=result.errors,
        duration_seconds=round(time.time() - started, 3),
        status=status,
        details_json=canonical_json({"cancelled": result.cancelled, "errors": failures}),
    )
    logger.info("SYNC: run %s total=%d %s", status, len(raw_orders), result.summary())
    return {"history": history, "result": result.to_dict()}
