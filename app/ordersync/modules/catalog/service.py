from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import Session

from app.ordersync.db import SessionFactory
from app.ordersync.modules.catalog.models import Product
from app.ordersync.utils import BlobError, as_number, parse_json_blob, safe_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KitComponent:
    sku: str
    quantity: int | float


@dataclass(frozen=True)
class ProductRecord:
    """Parsed, immutable view of a Product row."""
    sku: str
    name: str
    weight: int | float | None = None
    components: tuple[KitComponent, ...] = ()
    stock_balances: dict[str, int | float] = field(default_factory=dict)

    @property
    def is_kit(self) -> bool:
        return bool(self.components)


class Catalog(Protocol):
    def lookup(self, sku: str) -> ProductRecord | None:
        ...


def _parse_components(raw: Any, sku: str) -> tuple[KitComponent, ...]:
    try:
        value = parse_json_blob(raw)
    except BlobError as e:
        logger.warning("CATALOG: product=%s has unparseable set: %s", sku, e)
        return ()
    if not isinstance(value, list):
        return ()
    out: list[KitComponent] = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        component_sku = safe_text(entry.get("id") or entry.get("sku"))
        qty = as_number(entry.get("quantity"))
        if component_sku and qty and qty > 0:
            out.append(KitComponent(sku=component_sku, quantity=qty))
    return tuple(out)


def _parse_stock(raw: Any, sku: str) -> dict[str, int | float]:
    try:
        value = parse_json_blob(raw)
    except BlobError as e:
        logger.warning("CATALOG: product=%s has unparseable stock balances: %s", sku, e)
        return {}
    if not isinstance(value, dict):
        return {}
    balances: dict[str, int | float] = {}
    for warehouse_id, balance in value.items():
        n = as_number(balance)
        if n is not None:
            balances[str(warehouse_id)] = n
    return balances


def to_record(p: Product) -> ProductRecord:
    return ProductRecord(
        sku=p.sku,
        name=p.name,
        weight=as_number(p.weight) or None,
        components=_parse_components(p.set_json, p.sku),
        stock_balances=_parse_stock(p.stock_balance_json, p.sku),
    )


def get_product_by_sku(s: Session, sku: str) -> Product | None:
    return s.query(Product).filter(Product.sku == sku).one_or_none()


def get_products_by_skus(s: Session, skus: list[str]) -> dict[str, Product]:
    if not skus:
        return {}
    rows = s.query(Product).filter(Product.sku.in_(skus)).all()
    return {p.sku: p for p in rows}


@dataclass(frozen=True)
class SessionCatalog:
    """Catalog lookups on a caller-owned session."""
    session: Session

    def lookup(self, sku: str) -> ProductRecord | None:
        p = get_product_by_sku(self.session, sku)
        return to_record(p) if p else None


@dataclass(frozen=True)
class DbCatalog:
    """Catalog lookups, each on its own short-lived session. Safe to share across workers."""
    session_factory: SessionFactory

    def lookup(self, sku: str) -> ProductRecord | None:
        s = self.session_factory()
        try:
            p = get_product_by_sku(s, sku)
            return to_record(p) if p else None
        finally:
            s.close()


class CachedCatalog:
    """
    Memoizing wrapper scoped to one batch run. Create a new one per batch;
    catalog edits made mid-batch are not observed by it.
    """

    def __init__(self, inner: Catalog) -> None:
        self._inner = inner
        self._records: dict[str, ProductRecord | None] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def lookup(self, sku: str) -> ProductRecord | None:
        with self._lock:
            if sku in self._records:
                self.hits += 1
                return self._records[sku]
        record = self._inner.lookup(sku)
        with self._lock:
            self.misses += 1
            self._records[sku] = record
        return record
