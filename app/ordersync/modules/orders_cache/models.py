from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.ordersync.constants import CACHE_VERSION
from app.ordersync.models import Base
from app.ordersync.utils import utcnow


class OrderCache(Base):
    """Derived per-order product statistics. Replaced wholesale, never patched."""
    __tablename__ = "orders_cache"
    __table_args__ = (
        Index("idx_orders_cache_cache_updated_at", "cache_updated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    # Serialized [{"sku", "name", "orderedQuantity", "stockBalances"}, ...]
    processed_items: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    # Kilograms
    total_weight: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    cache_version: Mapped[int] = mapped_column(Integer, nullable=False, default=CACHE_VERSION)
    cache_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
