from datetime import datetime

from app.ordersync.modules.orders.changes import COMPARED_FIELDS, detect_changes


def _stored(**overrides):
    row = {
        "status": "2",
        "status_text": "Підтверджено",
        "tracking_number": "",
        "quantity": 3,
        "customer_name": "Петренко Іван",
        "customer_phone": "+380501112233",
        "delivery_address": "вул. Хрещатик, 1",
        "total_price": 450.0,
        "shipping_method": "Нова Пошта",
        "payment_method": "LiqPay",
        "city_name": "Київ",
        "provider": "novaposhta",
        "channel": "12",
        "discount_reason": "",
        # 10:00 in Kyiv (UTC+3 in summer), stored as naive UTC
        "order_date": datetime(2025, 8, 1, 7, 0),
        "items": '[{"price":150,"productName":"Kit","quantity":3,"sku":"KIT"}]',
        "raw_data": '{"id":1001,"statusId":"2"}',
    }
    row.update(overrides)
    return row


def _incoming(**overrides):
    row = _stored()
    row["order_date"] = "2025-08-01 10:00:00"
    row["items"] = [{"sku": "KIT", "quantity": 3, "productName": "Kit", "price": 150}]
    row["raw_data"] = {"statusId": "2", "id": 1001}
    row.update(overrides)
    return row


def test_identical_order_has_no_changes():
    changes = detect_changes(_stored(), _incoming())
    assert not changes
    assert changes.fields == []


def test_scalar_change_reports_old_and_new():
    changes = detect_changes(_stored(), _incoming(status="3", status_text="На відправку"))
    assert changes.fields == ["status", "status_text"]
    assert changes.details["status"] == {"oldValue": "2", "newValue": "3"}
    assert "status" in changes
    assert "customer_name" not in changes


def test_missing_incoming_keys_are_not_changes():
    incoming = _incoming(status="4")
    del incoming["customer_name"]
    del incoming["items"]
    changes = detect_changes(_stored(customer_name="Changed elsewhere"), incoming)
    assert changes.fields == ["status"]


def test_int_and_float_price_compare_equal():
    assert not detect_changes(_stored(total_price=450.0), _incoming(total_price=450))


def test_order_date_compared_by_business_day():
    # Later the same Kyiv day
    assert not detect_changes(_stored(), _incoming(order_date="2025-08-01 23:30:00"))
    # Next Kyiv day
    assert detect_changes(_stored(), _incoming(order_date="2025-08-02 01:00:00")).fields == ["order_date"]


def test_order_date_near_midnight_uses_business_zone():
    # 22:00 UTC on the 31st is already 01:00 on the 1st in Kyiv
    stored = _stored(order_date=datetime(2025, 7, 31, 22, 0))
    assert not detect_changes(stored, _incoming(order_date="2025-08-01 00:30:00"))
    assert detect_changes(stored, _incoming(order_date="2025-07-31 23:30:00")).fields == ["order_date"]


def test_order_date_aware_incoming_value():
    assert not detect_changes(_stored(), _incoming(order_date="2025-08-01T07:00:00+00:00"))


def test_order_date_cleared_is_a_change():
    assert detect_changes(_stored(), _incoming(order_date=None)).fields == ["order_date"]


def test_blob_key_order_does_not_matter():
    stored = _stored(raw_data='{"statusId":"2","id":1001}')
    assert not detect_changes(stored, _incoming(raw_data={"id": 1001, "statusId": "2"}))
    assert not detect_changes(stored, _incoming(raw_data='{"id": 1001, "statusId": "2"}'))


def test_blob_content_change_is_detected():
    changes = detect_changes(_stored(), _incoming(items=[{"sku": "KIT", "quantity": 4, "productName": "Kit", "price": 150}]))
    assert changes.fields == ["items"]


def test_unparseable_stored_blob_counts_as_changed():
    changes = detect_changes(_stored(raw_data="{not json"), _incoming())
    assert changes.fields == ["raw_data"]


def test_unserializable_incoming_blob_counts_as_changed():
    changes = detect_changes(_stored(), _incoming(raw_data={"id": float("nan")}))
    assert changes.fields == ["raw_data"]


def test_empty_blobs_are_equal():
    assert not detect_changes(_stored(items=None), _incoming(items=None))


def test_works_on_attribute_objects():
    class Row:
        pass

    row = Row()
    for k, v in _stored().items():
        setattr(row, k, v)
    assert not detect_changes(row, _incoming())
    assert set(COMPARED_FIELDS) == set(_stored())
