"""create order sync tables

Revision ID: a7c3e91d2b40
Revises:
Create Date: 2026-09-14

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "a7c3e91d2b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


BIGINT = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _index_names(insp, table: str) -> set[str]:
    return {ix.get("name") for ix in insp.get_indexes(table)}


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)

    if not insp.has_table("products"):
        op.create_table(
            "products",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("sku", sa.String(191), nullable=False, unique=True),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("weight", sa.Integer(), nullable=True),
            sa.Column("set_json", sa.Text(), nullable=True),
            sa.Column("stock_balance_json", sa.Text(), nullable=True),
            sa.Column("cost_per_item", sa.Float(), nullable=True),
            sa.Column("currency", sa.String(8), nullable=False, server_default="UAH"),
            sa.Column("category_name", sa.Text(), nullable=True),
            sa.Column("is_outdated", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("last_sync_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        )
    if "idx_products_last_sync_at" not in _index_names(insp, "products"):
        op.create_index("idx_products_last_sync_at", "products", ["last_sync_at"])

    if not insp.has_table("orders"):
        op.create_table(
            "orders",
            # Upstream id; never generated locally.
            sa.Column("id", BIGINT, primary_key=True, autoincrement=False, nullable=False),
            sa.Column("external_id", sa.String(64), nullable=False, unique=True),
            sa.Column("order_number", sa.String(64), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="1"),
            sa.Column("status_text", sa.Text(), nullable=True),
            sa.Column("tracking_number", sa.String(64), nullable=True),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("customer_name", sa.Text(), nullable=True),
            sa.Column("customer_phone", sa.String(64), nullable=True),
            sa.Column("delivery_address", sa.Text(), nullable=True),
            sa.Column("total_price", sa.Float(), nullable=True),
            sa.Column("order_date", sa.DateTime(timezone=False), nullable=True),
            sa.Column("shipping_method", sa.Text(), nullable=True),
            sa.Column("payment_method", sa.Text(), nullable=True),
            sa.Column("city_name", sa.Text(), nullable=True),
            sa.Column("provider", sa.String(64), nullable=True),
            sa.Column("channel", sa.String(32), nullable=True),
            sa.Column("discount_reason", sa.Text(), nullable=True),
            sa.Column("items", sa.Text(), nullable=True),
            sa.Column("raw_data", sa.Text(), nullable=True),
            sa.Column("last_synced", sa.DateTime(timezone=False), nullable=True),
            sa.Column("sync_status", sa.String(16), nullable=False, server_default="pending"),
            sa.Column("sync_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        )
    idx = _index_names(insp, "orders")
    for name, col in (
        ("idx_orders_order_date", "order_date"),
        ("idx_orders_status", "status"),
        ("idx_orders_sync_status", "sync_status"),
    ):
        if name not in idx:
            op.create_index(name, "orders", [col])

    if not insp.has_table("orders_history"):
        op.create_table(
            "orders_history",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("order_id", BIGINT, sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("status", sa.String(16), nullable=False),
            sa.Column("status_text", sa.Text(), nullable=True),
            sa.Column("source", sa.String(32), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("changed_at", sa.DateTime(timezone=False), nullable=False),
        )
    idx = _index_names(insp, "orders_history")
    for name, col in (
        ("idx_orders_history_order_id", "order_id"),
        ("idx_orders_history_changed_at", "changed_at"),
    ):
        if name not in idx:
            op.create_index(name, "orders_history", [col])

    if not insp.has_table("orders_cache"):
        op.create_table(
            "orders_cache",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("external_id", sa.String(64), nullable=False, unique=True),
            sa.Column("processed_items", sa.Text(), nullable=True),
            sa.Column("total_quantity", sa.Float(), nullable=False, server_default=sa.text("0")),
            sa.Column("total_weight", sa.Float(), nullable=False, server_default=sa.text("0")),
            sa.Column("cache_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("cache_updated_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        )
    if "idx_orders_cache_cache_updated_at" not in _index_names(insp, "orders_cache"):
        op.create_index("idx_orders_cache_cache_updated_at", "orders_cache", ["cache_updated_at"])

    if not insp.has_table("sync_history"):
        op.create_table(
            "sync_history",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("sync_type", sa.String(16), nullable=False, server_default="manual"),
            sa.Column("start_date", sa.String(32), nullable=True),
            sa.Column("end_date", sa.String(32), nullable=True),
            sa.Column("total_orders", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("new_orders", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("updated_orders", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("skipped_orders", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("errors", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("duration_seconds", sa.Float(), nullable=False, server_default=sa.text("0")),
            sa.Column("status", sa.String(16), nullable=False, server_default="success"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("details_json", sa.Text(), nullable=True),
        )
    if "idx_sync_history_created_at" not in _index_names(insp, "sync_history"):
        op.create_index("idx_sync_history_created_at", "sync_history", ["created_at"])


def downgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)

    for table in ("sync_history", "orders_cache", "orders_history", "orders", "products"):
        if insp.has_table(table):
            op.drop_table(table)
