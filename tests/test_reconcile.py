"""OrderReconciler against a temp SQLite database."""
import json
import threading

import pytest
from sqlalchemy import update

from app.ordersync import create_app
from app.ordersync.db import session_scope
from app.ordersync.models import Base
from app.ordersync.modules.catalog.models import Product
from app.ordersync.modules.orders.models import Order, OrdersHistory
from app.ordersync.modules.orders.service import get_order_with_derived_stats
from app.ordersync.modules.orders_cache.models import OrderCache
from app.ordersync.modules.orders_cache.service import recompute_cache_for
from app.ordersync.modules.orders_cache.validator import CacheValidator
from app.ordersync.modules.catalog.service import SessionCatalog
from app.ordersync.modules.salesdrive_sync import service as sync_service
from app.ordersync.modules.salesdrive_sync.service import OrderReconciler


def seed_products(s):
    s.add_all(
        [
            Product(sku="X", name="Component X", weight=100, stock_balance_json='{"1": 10, "2": 99}'),
            Product(sku="Y", name="Component Y", weight=50, stock_balance_json='{"1": 4}'),
            Product(sku="KIT", name="Kit", weight=1000, set_json='[{"id": "X", "quantity": 2}, {"id": "Y", "quantity": 1}]'),
        ]
    )


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        seed_products(s)
    return app


@pytest.fixture()
def reconciler(app):
    return OrderReconciler(app.extensions["sqlalchemy_sessionmaker"], max_workers=1, pause_seconds=0)


def incoming(order_id, **overrides):
    o = {
        "id": order_id,
        "external_id": str(order_id),
        "order_number": str(order_id),
        "status": "2",
        "status_text": "Підтверджено",
        "tracking_number": "",
        "quantity": 3,
        "customer_name": "Петренко Іван",
        "customer_phone": "+380501112233",
        "delivery_address": "вул. Хрещатик, 1",
        "total_price": 450.0,
        "order_date": "2025-08-01 10:00:00",
        "shipping_method": "Нова Пошта",
        "payment_method": "LiqPay",
        "city_name": "Київ",
        "provider": "novaposhta",
        "channel": "12",
        "discount_reason": "",
        "items": [{"productName": "Kit", "quantity": 3, "price": 150, "sku": "KIT"}],
        "raw_data": {"id": order_id, "statusId": "2"},
        "updated_at": "2025-08-01 10:05:00",
    }
    o.update(overrides)
    return o


def _history(s, order_id):
    return s.query(OrdersHistory).filter(OrdersHistory.order_id == order_id).order_by(OrdersHistory.id).all()


def test_new_order_is_created_with_history_and_cache(app, reconciler):
    result = reconciler.reconcile([incoming(1001)])

    assert result.summary() == {"created": 1, "updated": 0, "skipped": 0, "errors": 0}
    r = result.results[0]
    assert r.action == "created"
    assert r.cache_updated is True

    with session_scope(app) as s:
        o = s.get(Order, 1001)
        assert o.external_id == "1001"
        assert o.quantity == 3
        assert o.sync_status == "success"
        assert json.loads(o.items) == [{"price": 150, "productName": "Kit", "quantity": 3, "sku": "KIT"}]

        history = _history(s, 1001)
        assert len(history) == 1
        assert history[0].status == "2"
        assert history[0].source == "salesdrive"

        cache = s.query(OrderCache).filter(OrderCache.external_id == "1001").one()
        assert cache.total_quantity == 9
        assert cache.total_weight == 0.75
        stats = json.loads(cache.processed_items)
        assert {row["sku"]: row["orderedQuantity"] for row in stats} == {"X": 6, "Y": 3}
        assert stats[0]["stockBalances"] == {"1": 10}


def test_rerun_of_unchanged_batch_writes_nothing(app, reconciler):
    batch = [incoming(1001), incoming(1002)]
    reconciler.reconcile(batch)
    with session_scope(app) as s:
        before = {o.id: (o.last_synced, o.updated_at) for o in s.query(Order).all()}
        cache_before = {c.external_id: c.cache_updated_at for c in s.query(OrderCache).all()}
        history_before = s.query(OrdersHistory).count()

    result = reconciler.reconcile(batch)

    assert result.summary() == {"created": 0, "updated": 0, "skipped": 2, "errors": 0}
    with session_scope(app) as s:
        assert {o.id: (o.last_synced, o.updated_at) for o in s.query(Order).all()} == before
        assert {c.external_id: c.cache_updated_at for c in s.query(OrderCache).all()} == cache_before
        assert s.query(OrdersHistory).count() == history_before


def test_three_order_batch(app, reconciler):
    reconciler.reconcile([incoming(1002), incoming(1003)])

    result = reconciler.reconcile(
        [
            incoming(1001),
            incoming(1002),
            incoming(1003, status="3", status_text="На відправку"),
        ]
    )

    assert result.summary() == {"created": 1, "updated": 1, "skipped": 1, "errors": 0}
    assert [r.action for r in result.results] == ["created", "skipped", "updated"]
    assert result.results[2].changed_fields == ["status", "status_text"]

    with session_scope(app) as s:
        assert s.query(OrderCache).filter(OrderCache.external_id == "1001").count() == 1
        o = s.get(Order, 1003)
        assert o.status == "3"
        assert o.status_text == "На відправку"
        assert o.customer_name == "Петренко Іван"
        assert o.customer_phone == "+380501112233"
        history = _history(s, 1003)
        assert [h.status for h in history] == ["2", "3"]
        assert len(_history(s, 1002)) == 1


def test_update_leaves_fields_absent_from_input_alone(app, reconciler):
    reconciler.reconcile([incoming(1003)])

    # Another process edits a column the upstream record will not carry.
    with session_scope(app) as s:
        s.execute(update(Order).where(Order.id == 1003).values(customer_name="Changed elsewhere"))

    partial = incoming(1003, status="4", status_text="Відправлено")
    del partial["customer_name"]
    result = reconciler.reconcile([partial])

    assert result.results[0].changed_fields == ["status", "status_text"]
    with session_scope(app) as s:
        o = s.get(Order, 1003)
        assert o.status == "4"
        assert o.customer_name == "Changed elsewhere"


def test_update_without_quantity_keeps_the_stored_count(app, reconciler):
    reconciler.reconcile([incoming(1003)])
    with session_scope(app) as s:
        s.execute(update(Order).where(Order.id == 1003).values(quantity=7))

    partial = incoming(1003, status="4", status_text="Відправлено")
    del partial["quantity"]
    result = reconciler.reconcile([partial])

    assert result.results[0].changed_fields == ["status", "status_text"]
    with session_scope(app) as s:
        assert s.get(Order, 1003).quantity == 7
        assert [h.status for h in _history(s, 1003)] == ["2", "4"]


def test_create_without_quantity_uses_item_total(app, reconciler):
    o = incoming(1004)
    del o["quantity"]
    reconciler.reconcile([o])
    with session_scope(app) as s:
        assert s.get(Order, 1004).quantity == 9


def test_history_text_follows_new_status(app, reconciler):
    reconciler.reconcile([incoming(1005)])

    partial = incoming(1005, status="4")
    del partial["status_text"]
    reconciler.reconcile([partial])

    with session_scope(app) as s:
        rows = _history(s, 1005)
        assert [(h.status, h.status_text) for h in rows] == [("2", "Підтверджено"), ("4", "Відправлено")]


def test_force_update_rewrites_without_changes(app, reconciler):
    reconciler.reconcile([incoming(1001)])
    with session_scope(app) as s:
        synced_before = s.get(Order, 1001).last_synced

    result = reconciler.reconcile([incoming(1001)], force_update=True)

    assert result.summary()["updated"] == 1
    assert result.results[0].changed_fields == []
    with session_scope(app) as s:
        assert s.get(Order, 1001).last_synced >= synced_before
        # No tracked field changed, so no extra history row.
        assert len(_history(s, 1001)) == 1


def test_items_and_quantity_change_refreshes_cache_and_history(app, reconciler):
    reconciler.reconcile([incoming(1001)])

    result = reconciler.reconcile(
        [incoming(1001, quantity=4, items=[{"productName": "Kit", "quantity": 4, "price": 150, "sku": "KIT"}])]
    )

    r = result.results[0]
    assert r.action == "updated"
    assert r.changed_fields == ["quantity", "items"]
    assert r.cache_updated is True
    with session_scope(app) as s:
        assert s.query(OrderCache).filter(OrderCache.external_id == "1001").one().total_quantity == 12
        assert len(_history(s, 1001)) == 2


def test_missing_quantity_falls_back_to_kit_expanded_total(app, reconciler):
    result = reconciler.reconcile([incoming(1001, quantity=0)])
    assert result.results[0].action == "created"
    with session_scope(app) as s:
        assert s.get(Order, 1001).quantity == 9

    again = reconciler.reconcile([incoming(1001, quantity=0)])
    assert again.results[0].action == "skipped"


def test_unknown_sku_is_reported_as_warning(app, reconciler):
    items = [{"productName": "?", "quantity": 1, "price": 10, "sku": "NOPE"}]
    result = reconciler.reconcile([incoming(1001, items=items)])

    r = result.results[0]
    assert r.action == "created"
    assert "product not found: NOPE" in r.warnings


def test_bad_order_does_not_stop_the_batch(app, reconciler):
    result = reconciler.reconcile([incoming("abc", external_id="BAD-1"), incoming(1001)])

    assert result.summary() == {"created": 1, "updated": 0, "skipped": 0, "errors": 1}
    bad = result.results[0]
    assert bad.external_id == "BAD-1"
    assert bad.action == "error"
    assert "InvalidOrderId" in bad.error
    with session_scope(app) as s:
        assert s.query(Order).count() == 1


def test_id_mismatch_is_an_error_and_marks_the_row(app, reconciler):
    reconciler.reconcile([incoming(1001)])

    result = reconciler.reconcile([incoming(999, external_id="1001", status="5")])

    assert result.results[0].action == "error"
    with session_scope(app) as s:
        o = s.get(Order, 1001)
        assert o.status == "2"
        assert o.sync_status == "error"
        assert "id mismatch" in o.sync_error


def test_cache_failure_keeps_the_order_write(app, reconciler, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("cache table locked")

    monkeypatch.setattr(sync_service, "build_cache_for_order", broken)
    result = reconciler.reconcile([incoming(1001)])

    r = result.results[0]
    assert r.action == "created"
    assert r.cache_updated is False
    assert any("cache table locked" in w for w in r.warnings)
    with session_scope(app) as s:
        assert s.get(Order, 1001) is not None
        assert s.query(OrderCache).count() == 0


def test_failed_cache_refresh_leaves_no_stale_hit(app, reconciler, monkeypatch):
    reconciler.reconcile([incoming(1001)])

    def broken(*args, **kwargs):
        raise RuntimeError("cache table locked")

    monkeypatch.setattr(sync_service, "build_cache_for_order", broken)
    items = [{"productName": "X", "quantity": 5, "price": 10, "sku": "X"}]
    # Same upstream updated_at: only the items differ.
    result = reconciler.reconcile([incoming(1001, items=items, quantity=5)])
    assert result.results[0].action == "updated"
    assert result.results[0].cache_updated is False

    sf = app.extensions["sqlalchemy_sessionmaker"]
    out = CacheValidator(sf, max_workers=1, pause_seconds=0).validate(start_date="2025-08-01", end_date="2025-08-01")

    assert out.cache_hits == 0
    assert out.cache_misses == 1
    assert out.updated == 1
    with session_scope(app) as s:
        assert s.query(OrderCache).filter(OrderCache.external_id == "1001").one().total_quantity == 5


def test_cancelled_before_start(app, reconciler):
    cancel = threading.Event()
    cancel.set()
    result = reconciler.reconcile([incoming(1001), incoming(1002)], cancel_event=cancel)

    assert result.cancelled is True
    assert result.not_started == 2
    assert result.total == 0
    with session_scope(app) as s:
        assert s.query(Order).count() == 0


def test_parallel_waves_process_every_order(app):
    sf = app.extensions["sqlalchemy_sessionmaker"]
    reconciler = OrderReconciler(sf, max_workers=1, pause_seconds=0)
    batch = [incoming(2000 + n) for n in range(7)]

    result = reconciler.reconcile(batch, batch_size=2, concurrency=2)

    assert result.created == 7
    assert [r.external_id for r in result.results] == [str(2000 + n) for n in range(7)]


def test_recompute_matches_line_items_and_read_path(app, reconciler):
    reconciler.reconcile([incoming(1001)])
    with session_scope(app) as s:
        written_at = s.get(Order, 1001).last_synced
        s.execute(update(Order).where(Order.id == 1001).values(items='[{"sku": "KIT", "quantity": 5}]'))

    with session_scope(app) as s:
        assert recompute_cache_for(s, "1001", SessionCatalog(s)) is True
        assert recompute_cache_for(s, "missing", SessionCatalog(s)) is False

    with session_scope(app) as s:
        data = get_order_with_derived_stats(s, "1001")
        assert data["order"]["external_id"] == "1001"
        assert data["cache"]["total_quantity"] == 15
        cache = s.query(OrderCache).filter(OrderCache.external_id == "1001").one()
        assert cache.cache_updated_at >= written_at
        assert get_order_with_derived_stats(s, "missing") is None
