"""JSON endpoints, run_sync and history retention."""
from datetime import timedelta

import pytest

from app.ordersync import create_app
from app.ordersync.audit import prune_history
from app.ordersync.db import session_scope
from app.ordersync.models import Base
from app.ordersync.modules.catalog.models import Product
from app.ordersync.modules.orders.models import OrdersHistory
from app.ordersync.modules.orders.service import count_orders, list_orders
from app.ordersync.modules.salesdrive_sync.client import SalesDriveClient, SalesDriveError
from app.ordersync.modules.salesdrive_sync.models import SyncHistory
from app.ordersync.modules.salesdrive_sync.service import OrderReconciler, run_sync
from app.ordersync.utils import utcnow


def raw_order(order_id, **overrides):
    raw = {
        "id": order_id,
        "externalId": f"A-{order_id}",
        "sajt": "12",
        "statusId": "2",
        "orderTime": "2025-08-01 10:00:00",
        "updateAt": "2025-08-01 10:05:00",
        "kilTPorcij": 0,
        "paymentAmount": 300,
        "primaryContact": {"lName": "Коваль", "fName": "Олена", "phone": "+380671234567"},
        "products": [{"text": "Kit", "amount": 2, "price": 150, "sku": "KIT"}],
    }
    raw.update(overrides)
    return raw


class FakeFeed:
    def __init__(self, orders=None, error=None):
        self.orders = orders or []
        self.error = error
        self.calls = []

    def fetch_orders_since(self, start_date, end_date=None):
        self.calls.append((start_date, end_date))
        if self.error:
            raise self.error
        return list(self.orders)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("SYNC_MAX_WORKERS", "1")
    monkeypatch.setenv("SYNC_WAVE_PAUSE_SECONDS", "0")
    monkeypatch.setenv("CACHE_WAVE_PAUSE_SECONDS", "0")
    for k in ("SALESDRIVE_API_URL", "SALESDRIVE_API_KEY", "SALESDRIVE_FORM_KEY", "SALESDRIVE_SINCE_DATE"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        s.add_all(
            [
                Product(sku="X", name="Component X", weight=100),
                Product(sku="Y", name="Component Y", weight=50),
                Product(sku="KIT", name="Kit", set_json='[{"id": "X", "quantity": 2}, {"id": "Y", "quantity": 1}]'),
            ]
        )
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _reconcile_raw(client, *orders):
    return client.post("/api/sync/reconcile", json={"orders": list(orders), "raw": True})


def test_reconcile_endpoint_with_raw_records(client):
    r = _reconcile_raw(client, raw_order(1001), raw_order("oops", externalId="X-1"))

    assert r.status_code == 200
    assert r.json["ok"] is True
    assert r.json["created"] == 1
    assert r.json["errors"] == 1
    assert r.json["total"] == 2
    by_id = {x["external_id"]: x for x in r.json["results"]}
    assert by_id["A-1001"]["action"] == "created"
    assert by_id["X-1"]["action"] == "error"

    again = _reconcile_raw(client, raw_order(1001))
    assert again.json["skipped"] == 1


def test_reconcile_endpoint_validates_body(client):
    r = client.post("/api/sync/reconcile", json={"orders": "nope"})
    assert r.status_code == 400
    assert r.json["ok"] is False

    r = client.post("/api/sync/reconcile", json=[1, 2])
    assert r.status_code == 400

    r = client.post("/api/sync/reconcile", json={"orders": [], "batch_size": "x"})
    assert r.status_code == 400
    assert "batch_size" in r.json["error"]


def test_order_detail_and_recompute(client):
    _reconcile_raw(client, raw_order(1001))

    r = client.get("/api/orders/A-1001")
    assert r.status_code == 200
    assert r.json["order"]["quantity"] == 6
    assert r.json["order"]["customer_name"] == "Коваль Олена"
    assert r.json["cache"]["total_quantity"] == 6
    assert r.json["cache"]["total_weight"] == 0.5

    r = client.post("/api/orders/A-1001/cache")
    assert r.status_code == 200
    assert r.json == {"ok": True, "updated": True}

    assert client.get("/api/orders/missing").status_code == 404
    assert client.post("/api/orders/missing/cache").status_code == 404


def _seed_listing(client):
    _reconcile_raw(
        client,
        raw_order(1001, ord_delivery_data=[{"trackingNumber": "20450000111222"}]),
        raw_order(1002, statusId="5", orderTime="2025-08-03 09:00:00", paymentAmount=900),
        raw_order(1003, statusId="6", orderTime="2025-08-02 12:00:00"),
        raw_order(1004, statusId="8", orderTime="2025-08-02 13:00:00"),
    )


def _ids(r):
    return [o["external_id"] for o in r.json["orders"]]


def test_orders_list_hides_rejected_returned_and_deleted(client):
    _seed_listing(client)

    r = client.get("/api/orders")
    assert r.status_code == 200
    assert r.json["total"] == 2
    assert sorted(_ids(r)) == ["A-1001", "A-1002"]
    assert "items" not in r.json["orders"][0]

    assert client.get("/api/orders?status=all").json["total"] == 2
    r = client.get("/api/orders?status=6,8")
    assert sorted(_ids(r)) == ["A-1003", "A-1004"]

    r = client.get("/api/orders?status=5&include_items=1")
    assert _ids(r) == ["A-1002"]
    assert r.json["orders"][0]["items"][0]["sku"] == "KIT"


def test_orders_list_search_sort_and_pages(client):
    _seed_listing(client)

    assert _ids(client.get("/api/orders?search=111222")) == ["A-1001"]
    assert _ids(client.get("/api/orders?search=a-1002")) == ["A-1002"]
    assert client.get("/api/orders?search=nothing").json["total"] == 0

    assert _ids(client.get("/api/orders?sort_by=order_date&sort_order=asc")) == ["A-1001", "A-1002"]
    assert _ids(client.get("/api/orders?sort_by=total_price&sort_order=desc")) == ["A-1002", "A-1001"]

    r = client.get("/api/orders?sort_by=order_date&sort_order=asc&limit=1&offset=1")
    assert _ids(r) == ["A-1002"]
    assert r.json["total"] == 2
    assert (r.json["limit"], r.json["offset"]) == (1, 1)

    r = client.get("/api/orders?status=all&date_from=2025-08-02&date_to=2025-08-03")
    assert sorted(_ids(r)) == ["A-1002"]
    r = client.get("/api/orders?status=5,6,8&date_from=2025-08-02&date_to=2025-08-02")
    assert sorted(_ids(r)) == ["A-1003", "A-1004"]


def test_orders_list_rejects_bad_query(client):
    assert client.get("/api/orders?sort_by=customer_phone").status_code == 400
    assert client.get("/api/orders?sort_order=sideways").status_code == 400
    assert client.get("/api/orders?offset=-1").status_code == 400
    assert client.get("/api/orders?limit=0").status_code == 400
    assert client.get("/api/orders?date_to=2025-08-01").status_code == 400
    assert client.get("/api/orders?date_from=2025-08-05&date_to=2025-08-01").status_code == 400


def test_count_orders_matches_list_filters(app, client):
    _seed_listing(client)
    with session_scope(app) as s:
        assert count_orders(s) == 2
        assert count_orders(s, status=["5"]) == 1
        assert count_orders(s, status="8") == 1
        assert count_orders(s, sync_status="error") == 0
        assert count_orders(s, search="20450000111222") == 1
        assert count_orders(s, date_range=("2025-08-01", "2025-08-01")) == 1
        assert [o.id for o in list_orders(s, status=["2", "5"], sort_by="order_date", sort_order="asc")] == [1001, 1002]


def test_cache_validate_endpoint(client):
    _reconcile_raw(client, raw_order(1001))

    r = client.post("/api/cache/validate", json={"start_date": "2025-08-01", "end_date": "2025-08-01"})
    assert r.status_code == 200
    assert r.json["processed"] == 1
    assert r.json["cache_hits"] == 1

    r = client.post("/api/cache/validate", json={"start_date": "2025-08-05", "end_date": "2025-08-01"})
    assert r.status_code == 400
    assert r.json["ok"] is False


def test_cache_stats_endpoint(client):
    _reconcile_raw(client, raw_order(1001), raw_order(1002, statusId="5"))

    r = client.get("/api/cache/stats")
    assert r.status_code == 200
    assert r.json["cache"]["total_entries"] == 2
    assert r.json["orders"]["confirmed"] == 1
    assert r.json["orders"]["sold"] == 1
    assert r.json["orders"]["total"] == 2
    assert r.json["sync"]["synced_orders"] == 2
    assert r.json["sync"]["success_rate"] == 100.0


def test_sync_run_requires_configuration(client):
    r = client.post("/api/sync/run", json={"start_date": "2025-08-01"})
    assert r.status_code == 400
    assert "SALESDRIVE_API_URL" in r.json["error"]


def test_sync_run_upstream_failure_is_502(app, client, monkeypatch):
    app.config["SALESDRIVE_API_URL"] = "https://shop.salesdrive.me"
    app.config["SALESDRIVE_API_KEY"] = "key"

    def failing(self, start_date, end_date=None):
        raise SalesDriveError("HTTP 503 from SalesDrive")

    monkeypatch.setattr(SalesDriveClient, "fetch_orders_since", failing)
    r = client.post("/api/sync/run", json={"start_date": "2025-08-01"})
    assert r.status_code == 502

    h = client.get("/api/sync/history").json["history"]
    assert h[0]["status"] == "failed"
    assert "HTTP 503" in h[0]["error_message"]


def test_sync_run_endpoint(app, client, monkeypatch):
    app.config["SALESDRIVE_API_URL"] = "https://shop.salesdrive.me"
    app.config["SALESDRIVE_API_KEY"] = "key"
    monkeypatch.setattr(SalesDriveClient, "fetch_orders_since", lambda self, start, end=None: [raw_order(1001)])

    r = client.post("/api/sync/run", json={"start_date": "2025-08-01", "sync_type": "manual"})
    assert r.status_code == 200
    assert r.json["history"]["status"] == "success"
    assert r.json["history"]["new_orders"] == 1

    r = client.post("/api/sync/run", json={"start_date": "2025-08-01", "sync_type": "hourly"})
    assert r.status_code == 400
    r = client.post("/api/sync/run", json={"start_date": "01.08.2025"})
    assert r.status_code == 400


def test_run_sync_records_history(app):
    sf = app.extensions["sqlalchemy_sessionmaker"]
    feed = FakeFeed([raw_order(1001), raw_order(1002), raw_order(None, externalId="NO-ID")])
    reconciler = OrderReconciler(sf, max_workers=1, pause_seconds=0)

    out = run_sync(sf, feed, start_date="2025-08-01", end_date="2025-08-02", reconciler=reconciler)

    assert feed.calls == [("2025-08-01", "2025-08-02")]
    history = out["history"]
    assert history["status"] == "partial"
    assert history["total_orders"] == 3
    assert history["new_orders"] == 2
    assert history["errors"] == 1
    assert out["result"]["created"] == 2

    second = run_sync(sf, FakeFeed([raw_order(1001)]), start_date="2025-08-01", reconciler=reconciler)
    assert second["history"]["status"] == "success"
    assert second["history"]["skipped_orders"] == 1

    with session_scope(app) as s:
        assert s.query(SyncHistory).count() == 2


def test_run_sync_fetch_failure_is_recorded_and_raised(app):
    sf = app.extensions["sqlalchemy_sessionmaker"]
    with pytest.raises(SalesDriveError):
        run_sync(sf, FakeFeed(error=SalesDriveError("timeout")), start_date="2025-08-01")

    with session_scope(app) as s:
        row = s.query(SyncHistory).one()
        assert row.status == "failed"
        assert row.error_message == "timeout"


def test_sync_history_limit(app, client):
    sf = app.extensions["sqlalchemy_sessionmaker"]
    for _ in range(3):
        run_sync(sf, FakeFeed(), start_date="2025-08-01", reconciler=OrderReconciler(sf, max_workers=1, pause_seconds=0))

    r = client.get("/api/sync/history?limit=2")
    assert r.status_code == 200
    assert len(r.json["history"]) == 2
    assert client.get("/api/sync/history?limit=0").status_code == 400


def test_prune_history_drops_old_rows(app, client):
    _reconcile_raw(client, raw_order(1001))
    old = utcnow() - timedelta(days=40)
    with session_scope(app) as s:
        s.add(OrdersHistory(order_id=1001, status="1", source="salesdrive", changed_at=old))
        s.add(SyncHistory(sync_type="automatic", created_at=old))
        s.add(SyncHistory(sync_type="automatic"))

    with session_scope(app) as s:
        assert prune_history(s, days=30) == {"orders_history": 1, "sync_history": 1}

    with session_scope(app) as s:
        assert s.query(OrdersHistory).count() == 1
        assert s.query(SyncHistory).count() == 1
        with pytest.raises(ValueError):
            prune_history(s, days=0)
