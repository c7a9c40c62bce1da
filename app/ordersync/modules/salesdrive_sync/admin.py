from __future__ import annotations

from datetime import date
from typing import Any

from flask import Blueprint, current_app, jsonify, request

from app.ordersync.db import SessionFactory, db_session
from app.ordersync.modules.catalog.service import SessionCatalog
from app.ordersync.modules.orders.service import (
    InvalidOrderId,
    count_orders,
    get_order_by_external_id,
    get_order_with_derived_stats,
    get_status_counts,
    get_sync_stats,
    list_orders,
    order_to_dict,
)
from app.ordersync.modules.orders_cache.service import get_cache_statistics, recompute_cache_for
from app.ordersync.modules.orders_cache.validator import validator_from_config
from app.ordersync.modules.salesdrive_sync.client import SalesDriveError
from app.ordersync.modules.salesdrive_sync.models import SyncHistory
from app.ordersync.modules.salesdrive_sync.parsers import format_order
from app.ordersync.modules.salesdrive_sync.service import (
    ERROR,
    OrderResult,
    client_from_config,
    history_to_dict,
    reconciler_from_config,
    run_sync,
)
from app.ordersync.utils import safe_text

bp = Blueprint("salesdrive_sync", __name__)

SYNC_TYPES = ("manual", "automatic", "background")


class BadRequest(ValueError):
    pass


def _session_factory() -> SessionFactory:
    return current_app.extensions["sqlalchemy_sessionmaker"]


def _json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise BadRequest("JSON body must be an object.")
    return payload


def _bool(payload: dict[str, Any], key: str) -> bool:
    v = payload.get(key, False)
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def _int(payload: dict[str, Any], key: str, default: int) -> int:
    v = payload.get(key)
    if v is None or v == "":
        return default
    try:
        n = int(v)
    except (TypeError, ValueError):
        raise BadRequest(f"{key} must be an integer.") from None
    if n < 1:
        raise BadRequest(f"{key} must be >= 1.")
    return n


def _bad_request(message: str):
    return jsonify({"ok": False, "error": message}), 400


@bp.errorhandler(BadRequest)
def _handle_bad_request(e: BadRequest):
    return _bad_request(str(e))


@bp.post("/sync/reconcile")
def sync_reconcile():
    """
    Reconcile a posted batch. Body: {"orders": [...], "raw": bool,
    "batch_size", "concurrency", "force_update"}. With "raw" the orders are
    upstream records and go through the formatter first.
    """
    payload = _json_body()
    orders = payload.get("orders")
    if not isinstance(orders, list) or not all(isinstance(o, dict) for o in orders):
        raise BadRequest("orders must be a list of objects.")

    cfg = current_app.config
    batch_size = _int(payload, "batch_size", cfg["SYNC_BATCH_SIZE"])
    concurrency = _int(payload, "concurrency", cfg["SYNC_CONCURRENCY"])

    rejected: list[OrderResult] = []
    if _bool(payload, "raw"):
        formatted = []
        for raw in orders:
            try:
                formatted.append(format_order(raw))
            except InvalidOrderId as e:
                ref = safe_text(raw.get("externalId")) or safe_text(raw.get("id")) or "?"
                rejected.append(OrderResult(external_id=ref, action=ERROR, error=str(e)))
        orders = formatted

    reconciler = reconciler_from_config(_session_factory(), cfg)
    result = reconciler.reconcile(
        orders,
        batch_size=batch_size,
        concurrency=concurrency,
        force_update=_bool(payload, "force_update"),
    )
    for r in rejected:
        result.add(r)
    return jsonify({"ok": True, **result.to_dict()})


@bp.post("/sync/run")
def sync_run():
    payload = _json_body()
    cfg = current_app.config
    start_date = safe_text(payload.get("start_date")) or cfg.get("SALESDRIVE_SINCE_DATE") or date.today().isoformat()
    end_date = safe_text(payload.get("end_date")) or None
    sync_type = safe_text(payload.get("sync_type")) or "manual"
    if sync_type not in SYNC_TYPES:
        raise BadRequest(f"sync_type must be one of {', '.join(SYNC_TYPES)}.")
    for label, value in (("start_date", start_date), ("end_date", end_date)):
        if value:
            try:
                date.fromisoformat(value[:10])
            except ValueError:
                raise BadRequest(f"{label} must be YYYY-MM-DD.") from None

    try:
        client = client_from_config(cfg)
    except ValueError as e:
        raise BadRequest(str(e)) from None

    sf = _session_factory()
    try:
        out = run_sync(
            sf,
            client,
            start_date=start_date,
            end_date=end_date,
            sync_type=sync_type,
            force_update=_bool(payload, "force_update"),
            reconciler=reconciler_from_config(sf, cfg),
            batch_size=_int(payload, "batch_size", cfg["SYNC_BATCH_SIZE"]),
            concurrency=_int(payload, "concurrency", cfg["SYNC_CONCURRENCY"]),
        )
    except SalesDriveError as e:
        return jsonify({"ok": False, "error": f"Upstream fetch failed: {e}"}), 502
    return jsonify({"ok": True, **out})


@bp.get("/sync/history")
def sync_history():
    limit = min(_int(dict(request.args), "limit", 20), 200)
    s = db_session()
    rows = s.query(SyncHistory).order_by(SyncHistory.created_at.desc(), SyncHistory.id.desc()).limit(limit).all()
    return jsonify({"ok": True, "history": [history_to_dict(h) for h in rows]})


@bp.post("/cache/validate")
def cache_validate():
    payload = _json_body()
    validator = validator_from_config(_session_factory(), current_app.config)
    try:
        result = validator.validate(
            start_date=safe_text(payload.get("start_date")) or None,
            end_date=safe_text(payload.get("end_date")) or None,
            force=_bool(payload, "force"),
            dry_run=_bool(payload, "dry_run"),
        )
    except ValueError as e:
        return _bad_request(str(e))
    return jsonify({"ok": True, **result.to_dict()})


@bp.get("/cache/stats")
def cache_stats():
    s = db_session()
    return jsonify(
        {
            "ok": True,
            "cache": get_cache_statistics(s),
            "orders": get_status_counts(s),
            "sync": get_sync_stats(s),
        }
    )


@bp.get("/orders")
def orders_list():
    """
    Paged order list. Query: status (comma-separated codes, or "all"),
    sync_status, search, date_from/date_to, sort_by, sort_order, limit,
    offset, include_items.
    """
    args = dict(request.args)
    raw_status = safe_text(args.get("status"))
    status = None
    if raw_status and raw_status != "all":
        status = [x.strip() for x in raw_status.split(",") if x.strip()]
    date_from = safe_text(args.get("date_from")) or None
    date_to = safe_text(args.get("date_to")) or None
    if date_to and not date_from:
        raise BadRequest("date_to requires date_from.")
    date_range = (date_from, date_to or date.today().isoformat()) if date_from else None
    offset = 0
    if safe_text(args.get("offset")):
        try:
            offset = int(args["offset"])
        except ValueError:
            raise BadRequest("offset must be an integer.") from None
        if offset < 0:
            raise BadRequest("offset must be >= 0.")
    limit = min(_int(args, "limit", 100), 1000)
    filters = {
        "status": status,
        "sync_status": safe_text(args.get("sync_status")) or None,
        "search": safe_text(args.get("search")) or None,
        "date_range": date_range,
        "tz": current_app.config.get("BUSINESS_TIMEZONE", "Europe/Kyiv"),
    }

    s = db_session()
    try:
        rows = list_orders(
            s,
            sort_by=safe_text(args.get("sort_by")) or "created_at",
            sort_order=safe_text(args.get("sort_order")).lower() or "desc",
            limit=limit,
            offset=offset,
            **filters,
        )
        total = count_orders(s, **filters)
    except ValueError as e:
        return _bad_request(str(e))

    orders = []
    for o in rows:
        d = order_to_dict(o)
        if not _bool(args, "include_items"):
            d.pop("items")
            d.pop("raw_data")
        orders.append(d)
    return jsonify({"ok": True, "total": total, "limit": limit, "offset": offset, "orders": orders})


@bp.get("/orders/<external_id>")
def order_detail(external_id: str):
    s = db_session()
    data = get_order_with_derived_stats(s, external_id)
    if data is None:
        return jsonify({"ok": False, "error": f"Order {external_id} not found."}), 404
    return jsonify({"ok": True, **data})


@bp.post("/orders/<external_id>/cache")
def order_recompute_cache(external_id: str):
    s = db_session()
    if get_order_by_external_id(s, external_id) is None:
        return jsonify({"ok": False, "error": f"Order {external_id} not found."}), 404
    try:
        updated = recompute_cache_for(
            s,
            external_id,
            SessionCatalog(s),
            virtual_warehouse_id=current_app.config.get("VIRTUAL_WAREHOUSE_ID", "2"),
        )
        s.commit()
    except Exception:
        s.rollback()
        raise
    return jsonify({"ok": True, "updated": updated})
