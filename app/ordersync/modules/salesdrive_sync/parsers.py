from __future__ import annotations

from typing import Any

from app.ordersync.constants import STATUS_TEXT, UNKNOWN_STATUS_TEXT
from app.ordersync.modules.orders.service import parse_order_id
from app.ordersync.utils import as_number, safe_text

UNKNOWN_METHOD = "Невідомий"
UNKNOWN_PRODUCT = "Невідомий товар"

SHIPPING_METHODS = {
    "9": "Нова Пошта",
    "20": "Нова Пошта (адресна)",
    "16": "Укрпошта",
    "17": "Meest",
    "10": "Самовивоз",
}

PAYMENT_METHODS = {
    "14": "Plata by Mono",
    "13": "LiqPay",
    "12": "Післяплата",
    "15": "Готівка",
    "21": "Card",
    "23": "Apple Pay",
    "25": "Наложений платіж",
    "27": "Пром-оплата",
    "29": "Google Pay",
    "30": "Credit",
}

# Site codes whose orders carry no usable upstream order number.
SD_PREFIX_SITES = ("31", "38")


def status_text(status: Any) -> str:
    return STATUS_TEXT.get(safe_text(status), UNKNOWN_STATUS_TEXT)


def generate_external_id(raw: dict[str, Any]) -> str:
    """
    Display order number for a raw record.

    Numbers already prefixed with "SD" are kept. Orders from sites 31/38,
    orders without a site, and orders without an upstream number become
    "SD{id}".
    """
    external_id = safe_text(raw.get("externalId"))
    if external_id.startswith("SD"):
        return external_id
    site = safe_text(raw.get("sajt"))
    if not site or site in SD_PREFIX_SITES or not external_id:
        return f"SD{parse_order_id(raw.get('id'))}"
    return external_id


def _first_delivery(raw: dict[str, Any]) -> dict[str, Any]:
    data = raw.get("ord_delivery_data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}


def _customer(raw: dict[str, Any]) -> tuple[str, str]:
    contact = raw.get("primaryContact")
    if not isinstance(contact, dict):
        return "", ""
    name = " ".join(safe_text(contact.get(k)) for k in ("lName", "fName", "mName")).strip()
    name = " ".join(name.split())
    phone = contact.get("phone")
    if isinstance(phone, list):
        phone = phone[0] if phone else ""
    return name, safe_text(phone)


def parse_items(raw: dict[str, Any]) -> list[dict[str, Any]]:
    products = raw.get("products")
    if not isinstance(products, list):
        return []
    items: list[dict[str, Any]] = []
    for p in products:
        if not isinstance(p, dict):
            continue
        items.append(
            {
                "productName": safe_text(p.get("text")) or UNKNOWN_PRODUCT,
                "quantity": as_number(p.get("amount")) or 0,
                "price": as_number(p.get("price")) or 0,
                "sku": safe_text(p.get("sku")) or safe_text(p.get("parameter")),
            }
        )
    return items


def format_order(raw: dict[str, Any]) -> dict[str, Any]:
    """
    Map a raw upstream record to the incoming-order shape the reconciler
    consumes. Raises InvalidOrderId when the numeric id is unusable.
    """
    order_id = parse_order_id(raw.get("id"))
    delivery = _first_delivery(raw)
    customer_name, customer_phone = _customer(raw)
    status = safe_text(raw.get("statusId"))
    external_id = generate_external_id(raw)

    return {
        "id": order_id,
        "external_id": external_id,
        "order_number": external_id,
        "status": status,
        "status_text": status_text(status),
        "tracking_number": safe_text(delivery.get("trackingNumber")),
        "quantity": as_number(raw.get("kilTPorcij")) or 0,
        "customer_name": customer_name,
        "customer_phone": customer_phone,
        "delivery_address": safe_text(raw.get("shipping_address")),
        "total_price": float(as_number(raw.get("paymentAmount")) or 0),
        "order_date": safe_text(raw.get("orderTime")) or None,
        "shipping_method": SHIPPING_METHODS.get(safe_text(raw.get("shipping_method")), UNKNOWN_METHOD),
        "payment_method": PAYMENT_METHODS.get(safe_text(raw.get("payment_method")), UNKNOWN_METHOD),
        "city_name": safe_text(delivery.get("cityName")),
        "provider": safe_text(delivery.get("provider")),
        "channel": safe_text(raw.get("sajt")),
        "discount_reason": safe_text(raw.get("pricinaZnizki")),
        "items": parse_items(raw),
        "raw_data": raw,
        "updated_at": safe_text(raw.get("updateAt")) or None,
    }
