from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.ordersync.models import Base
from app.ordersync.utils import utcnow


class Product(Base):
    """Catalog product. A non-empty `set_json` makes the product a kit."""
    __tablename__ = "products"
    __table_args__ = (
        Index("idx_products_last_sync_at", "last_sync_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sku: Mapped[str] = mapped_column(String(191), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)

    # Grams
    weight: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # [{"id": "<component sku>", "quantity": <per kit>}, ...]
    set_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    # {"<warehouse id>": <balance>, ...}
    stock_balance_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    cost_per_item: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="UAH")
    category_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_outdated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    last_sync_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
