"""
Create tables and seed the product catalog.

The seed file is a JSON list of products:
  [{"sku": "...", "name": "...", "weight": 250, "set": [{"id": "<sku>", "quantity": 2}],
    "stockBalance": {"1": 10}, "costPerItem": 120.0, "currency": "UAH", "categoryName": "..."}]

Usage:
  python scripts/init_db.py                      # create tables (sqlite/dev)
  python scripts/init_db.py --seed products.json # create tables + upsert products
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts._db_utils import resolve_database_url, script_engine, script_session  # noqa: E402


def _blob(value: Any) -> str | None:
    from app.ordersync.utils import canonical_json

    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    return canonical_json(value)


def load_seed_file(path: str | Path) -> list[dict[str, Any]]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list of products")
    return [p for p in data if isinstance(p, dict)]


def upsert_products(s, products: list[dict[str, Any]]) -> dict[str, int]:
    """Insert or refresh products by SKU. Returns created/updated/skipped counts."""
    from app.ordersync.modules.catalog.models import Product
    from app.ordersync.utils import utcnow

    counts = {"created": 0, "updated": 0, "skipped": 0}
    now = utcnow()
    for raw in products:
        sku = str(raw.get("sku") or "").strip()
        name = str(raw.get("name") or "").strip()
        if not sku or not name:
            counts["skipped"] += 1
            continue
        values = {
            "name": name,
            "weight": raw.get("weight"),
            "set_json": _blob(raw.get("set")),
            "stock_balance_json": _blob(raw.get("stockBalance")),
            "cost_per_item": raw.get("costPerItem"),
            "currency": raw.get("currency") or "UAH",
            "category_name": raw.get("categoryName"),
            "is_outdated": bool(raw.get("isOutdated", False)),
            "last_sync_at": now,
            "updated_at": now,
        }
        p = s.query(Product).filter(Product.sku == sku).one_or_none()
        if p is None:
            s.add(Product(sku=sku, created_at=now, **values))
            counts["created"] += 1
        else:
            for k, v in values.items():
                setattr(p, k, v)
            counts["updated"] += 1
    return counts


def create_tables(*, database_url: str | None = None) -> None:
    from app.ordersync.models import Base

    with script_engine(resolve_database_url(database_url)) as engine:
        Base.metadata.create_all(bind=engine)
    print("Tables created (create_all).")


def seed_only(*, database_url: str | None = None, seed_file: str | None = None) -> None:
    """
    Seed products in an idempotent way. Without a seed file (argument or
    PRODUCTS_SEED_FILE) this is a no-op.
    """
    seed_file = seed_file or (os.environ.get("PRODUCTS_SEED_FILE") or "").strip() or None
    if not seed_file:
        print("No product seed file configured; skipping seed.")
        return

    products = load_seed_file(seed_file)
    with script_session(resolve_database_url(database_url)) as s:
        counts = upsert_products(s, products)
    print(f"Seeded products from {seed_file}: {counts}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Create tables and seed products")
    parser.add_argument("--seed", help="JSON file with products to upsert")
    parser.add_argument("--no-create", action="store_true", help="Skip create_all (tables managed by alembic)")
    args = parser.parse_args()

    if not args.no_create:
        create_tables()
    seed_only(seed_file=args.seed)


if __name__ == "__main__":
    main()
