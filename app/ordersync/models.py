from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.ordersync.modules.catalog.models import Product  # noqa: E402,F401
from app.ordersync.modules.orders.models import Order, OrdersHistory  # noqa: E402,F401
from app.ordersync.modules.orders_cache.models import OrderCache  # noqa: E402,F401
from app.ordersync.modules.salesdrive_sync.models import SyncHistory  # noqa: E402,F401
