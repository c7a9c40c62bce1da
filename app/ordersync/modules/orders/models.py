from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.ordersync.models import Base
from app.ordersync.utils import utcnow


class Order(Base):
    """
    Local mirror of an upstream order.

    `id` is the upstream numeric id and is never generated locally.
    `items` and `raw_data` hold serialized JSON text.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index("idx_orders_order_date", "order_date"),
        Index("idx_orders_status", "status"),
        Index("idx_orders_sync_status", "sync_status"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=False)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    order_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="1")
    status_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    customer_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    delivery_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    order_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    shipping_method: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(Text, nullable=True)
    city_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    channel: Mapped[str | None] = mapped_column(String(32), nullable=True)
    discount_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    items: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_data: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_synced: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    sync_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    # Last known upstream modification time (not the local write time).
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class OrdersHistory(Base):
    __tablename__ = "orders_history"
    __table_args__ = (
        Index("idx_orders_history_order_id", "order_id"),
        Index("idx_orders_history_changed_at", "changed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), ForeignKey("orders.id"), nullable=False
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False)
    status_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
