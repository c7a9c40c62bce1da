from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.ordersync.models import Base
from app.ordersync.utils import utcnow


class SyncHistory(Base):
    """One row per reconcile run against the upstream feed."""
    __tablename__ = "sync_history"
    __table_args__ = (
        Index("idx_sync_history_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    # manual | automatic | background
    sync_type: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")
    start_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    end_date: Mapped[str | None] = mapped_column(String(32), nullable=True)

    total_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    # success | partial | failed
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="success")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details_json: Mapped[str | None] = mapped_column(Text, nullable=True)
