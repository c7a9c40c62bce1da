from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from app.ordersync.modules.catalog.service import Catalog, ProductRecord
from app.ordersync.utils import as_number, canonical_json, safe_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItem:
    sku: str
    quantity: int | float


@dataclass
class Aggregates:
    """
    Per-SKU statistics for one order after kit expansion.

    `stats` entries look like {"sku", "name", "orderedQuantity", "stockBalances"}
    and keep first-seen SKU order.
    """
    stats: list[dict[str, Any]] = field(default_factory=list)
    total_quantity: int | float = 0
    total_weight_kg: float = 0.0
    warnings: list[str] = field(default_factory=list)

    def serialized_stats(self) -> str:
        return canonical_json(self.stats)

    def quantities_by_sku(self) -> dict[str, int | float]:
        return {row["sku"]: row["orderedQuantity"] for row in self.stats}


def normalize_line_items(raw_items: Any) -> list[LineItem]:
    """Usable line items only: a non-empty sku and a positive quantity."""
    if not isinstance(raw_items, list):
        return []
    out: list[LineItem] = []
    for it in raw_items:
        if not isinstance(it, dict):
            continue
        sku = safe_text(it.get("sku"))
        qty = as_number(it.get("quantity"))
        if not sku or not qty or qty <= 0:
            continue
        out.append(LineItem(sku=sku, quantity=qty))
    return out


def _lookup(catalog: Catalog, sku: str, warnings: list[str]) -> ProductRecord | None:
    try:
        product = catalog.lookup(sku)
    except Exception as e:
        logger.warning("CATALOG: lookup failed sku=%s err=%s", sku, e)
        warnings.append(f"lookup failed for {sku}: {e}")
        return None
    if product is None:
        logger.warning("CATALOG: sku=%s not found", sku)
        warnings.append(f"product not found: {sku}")
    return product


def _normalize(n: int | float) -> int | float:
    return as_number(n) or 0


def compute_aggregates(
    line_items: Any,
    catalog: Catalog,
    *,
    virtual_warehouse_id: str | None = "2",
) -> Aggregates:
    """
    Flatten kits into their components and aggregate ordered quantity and
    weight per component SKU.

    Kit parents never appear in `stats` and add no weight of their own.
    Unresolvable SKUs (line items or kit components) are skipped and reported
    in `warnings`. Weight is grams * quantity over primitive products, in kg.
    The virtual warehouse is dropped from each SKU's stock snapshot.
    """
    agg = Aggregates()
    quantities: dict[str, int | float] = {}
    products: dict[str, ProductRecord] = {}
    grams = 0.0

    for item in normalize_line_items(line_items):
        product = _lookup(catalog, item.sku, agg.warnings)
        if product is None:
            continue

        if product.is_kit:
            for comp in product.components:
                component = _lookup(catalog, comp.sku, agg.warnings)
                if component is None:
                    continue
                qty = item.quantity * comp.quantity
                quantities[component.sku] = quantities.get(component.sku, 0) + qty
                products.setdefault(component.sku, component)
                if component.weight:
                    grams += component.weight * qty
            continue

        quantities[product.sku] = quantities.get(product.sku, 0) + item.quantity
        products.setdefault(product.sku, product)
        if product.weight:
            grams += product.weight * item.quantity

    for sku, qty in quantities.items():
        product = products[sku]
        balances = {
            wh: bal for wh, bal in product.stock_balances.items()
            if virtual_warehouse_id is None or wh != str(virtual_warehouse_id)
        }
        agg.stats.append(
            {
                "sku": product.sku,
                "name": product.name,
                "orderedQuantity": _normalize(qty),
                "stockBalances": balances,
            }
        )

    agg.total_quantity = _normalize(sum(quantities.values()))
    agg.total_weight_kg = round(grams / 1000.0, 6)
    return agg


def actual_quantity(line_items: Any, catalog: Catalog, initial_quantity: Any = None) -> int | float:
    """
    Portion count for a new order: the upstream value when positive,
    otherwise the kit-expanded total of the line items.
    """
    initial = as_number(initial_quantity)
    if initial and initial > 0:
        return initial
    return compute_aggregates(line_items, catalog, virtual_warehouse_id=None).total_quantity


def quantities_from_stats(stats: Any) -> dict[str, int | float] | None:
    """
    Per-SKU ordered quantities recovered from cached stats. None when the
    cached value is not a list of stat rows.
    """
    if not isinstance(stats, list):
        return None
    out: dict[str, int | float] = {}
    for row in stats:
        if not isinstance(row, dict):
            return None
        sku = safe_text(row.get("sku"))
        qty = as_number(row.get("orderedQuantity"))
        if not sku or qty is None:
            return None
        out[sku] = _normalize(out.get(sku, 0) + qty)
    return out


def canonical_quantities(quantities: Iterable[tuple[str, int | float]] | dict[str, int | float]) -> str:
    if isinstance(quantities, dict):
        quantities = quantities.items()
    return canonical_json({sku: _normalize(qty) for sku, qty in quantities})
