"""fulfillment core: products / orders / sessions / allocations / movements

Revision ID: 0001_fulfillment_core
Revises:
Create Date: 2026-10-17
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "0001_fulfillment_core"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = True) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("sku", sa.String(128), nullable=True),
        sa.Column("stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("initial_stock", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        sa.CheckConstraint("initial_stock >= 0", name="ck_products_initial_stock_non_negative"),
    )
    op.create_index("ix_products_store_id", "products", ["store_id"])
    op.create_index("ix_products_store_sku", "products", ["store_id", "sku"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(64), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("line_item_source", sa.String(16), nullable=False, server_default="normalized"),
        sa.Column("line_items", sa.JSON(), nullable=True),
        sa.Column("stock_deducted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.UniqueConstraint("store_id", "order_number", name="uq_orders_store_number"),
    )
    op.create_index("ix_orders_store_id", "orders", ["store_id"])
    op.create_index("ix_orders_store_status", "orders", ["store_id", "status"])

    op.create_table(
        "order_line_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=True),
        sa.Column("sku", sa.String(128), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_order_line_items_qty_positive"),
    )
    op.create_index("ix_order_line_items_order_id", "order_line_items", ["order_id"])
    op.create_index("ix_order_line_items_product_id", "order_line_items", ["product_id"])

    op.create_table(
        "fulfillment_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="picking"),
        sa.Column("created_by", sa.String(64), nullable=True),
        _ts("picking_started_at"),
        _ts("picking_completed_at"),
        _ts("packing_started_at"),
        _ts("packing_completed_at"),
        _ts("completed_at"),
        _ts("last_activity_at"),
        _ts("abandoned_at"),
        sa.Column("abandoned_by", sa.String(64), nullable=True),
        sa.Column("abandon_reason", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.UniqueConstraint("store_id", "code", name="uq_fulfillment_sessions_store_code"),
    )
    op.create_index("ix_fulfillment_sessions_store_id", "fulfillment_sessions", ["store_id"])
    op.create_index(
        "ix_fulfillment_sessions_store_status", "fulfillment_sessions", ["store_id", "status"]
    )

    op.create_table(
        "fulfillment_session_orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.Integer(),
            sa.ForeignKey("fulfillment_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _ts("added_at", nullable=False),
        sa.UniqueConstraint("session_id", "order_id", name="uq_fulfillment_session_orders"),
    )
    op.create_index(
        "ix_fulfillment_session_orders_session_id", "fulfillment_session_orders", ["session_id"]
    )
    op.create_index(
        "ix_fulfillment_session_orders_order_id", "fulfillment_session_orders", ["order_id"]
    )

    op.create_table(
        "session_pick_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.Integer(),
            sa.ForeignKey("fulfillment_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("total_quantity_needed", sa.Integer(), nullable=False),
        sa.Column("quantity_picked", sa.Integer(), nullable=False, server_default="0"),
        _ts("picked_at"),
        _ts("updated_at", nullable=False),
        sa.UniqueConstraint("session_id", "product_id", name="uq_session_pick_items"),
        sa.CheckConstraint("quantity_picked >= 0", name="ck_pick_items_picked_non_negative"),
        sa.CheckConstraint(
            "quantity_picked <= total_quantity_needed", name="ck_pick_items_picked_le_needed"
        ),
    )
    op.create_index("ix_session_pick_items_session_id", "session_pick_items", ["session_id"])

    op.create_table(
        "packing_allocations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.Integer(),
            sa.ForeignKey("fulfillment_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("quantity_needed", sa.Integer(), nullable=False),
        sa.Column("quantity_packed", sa.Integer(), nullable=False, server_default="0"),
        _ts("packed_at"),
        _ts("updated_at", nullable=False),
        sa.UniqueConstraint("session_id", "order_id", "product_id", name="uq_packing_allocations"),
        sa.CheckConstraint("quantity_packed >= 0", name="ck_packing_packed_non_negative"),
        sa.CheckConstraint("quantity_packed <= quantity_needed", name="ck_packing_packed_le_needed"),
    )
    op.create_index("ix_packing_allocations_session_id", "packing_allocations", ["session_id"])
    op.create_index(
        "ix_packing_allocations_session_product",
        "packing_allocations",
        ["session_id", "product_id"],
    )

    op.create_table(
        "inventory_movements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("quantity_change", sa.Integer(), nullable=False),
        sa.Column("stock_before", sa.Integer(), nullable=False),
        sa.Column("stock_after", sa.Integer(), nullable=False),
        sa.Column("shortfall_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status_from", sa.String(32), nullable=True),
        sa.Column("status_to", sa.String(32), nullable=True),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
        sa.CheckConstraint("stock_after >= 0", name="ck_movements_after_non_negative"),
        sa.CheckConstraint("shortfall_qty >= 0", name="ck_movements_shortfall_non_negative"),
        sa.CheckConstraint(
            "stock_after - stock_before = quantity_change", name="ck_movements_delta_matches"
        ),
    )
    op.create_index("ix_inventory_movements_store_id", "inventory_movements", ["store_id"])
    op.create_index("ix_inventory_movements_order_id", "inventory_movements", ["order_id"])
    op.create_index("ix_inventory_movements_product", "inventory_movements", ["product_id", "id"])


def downgrade() -> None:
    op.drop_table("inventory_movements")
    op.drop_table("packing_allocations")
    op.drop_table("session_pick_items")
    op.drop_table("fulfillment_session_orders")
    op.drop_table("fulfillment_sessions")
    op.drop_table("order_line_items")
    op.drop_table("orders")
    op.drop_table("products")
