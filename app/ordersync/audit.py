from __future__ import annotations

from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.orm import Session

from app.ordersync.constants import DEFAULT_HISTORY_RETENTION_DAYS
from app.ordersync.modules.orders.models import OrdersHistory
from app.ordersync.modules.salesdrive_sync.models import SyncHistory
from app.ordersync.utils import utcnow


def record_order_history(
    s: Session,
    *,
    order_id: int,
    status: str,
    status_text: str | None,
    source: str,
    user_id: int | None = None,
    notes: str | None = None,
) -> OrdersHistory:
    """
    Append-only order history helper.
    """
    row = OrdersHistory(
        order_id=order_id,
        status=status,
        status_text=status_text,
        source=source,
        user_id=user_id,
        notes=notes,
    )
    s.add(row)
    return row


def prune_history(s: Session, *, days: int = DEFAULT_HISTORY_RETENTION_DAYS) -> dict[str, int]:
    """Delete order history and sync run rows older than `days`."""
    if days < 1:
        raise ValueError("days must be >= 1")
    cutoff = utcnow() - timedelta(days=days)
    orders = s.execute(delete(OrdersHistory).where(OrdersHistory.changed_at < cutoff)).rowcount or 0
    runs = s.execute(delete(SyncHistory).where(SyncHistory.created_at < cutoff)).rowcount or 0
    return {"orders_history": orders, "sync_history": runs}
