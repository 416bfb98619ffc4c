# fulfillment_engine/models/inventory_movement.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from fulfillment_engine.db.base import Base


class InventoryMovement(Base):
    """
    库存台账（只增不改）

    - quantity_change 记录实际落地的变化量（钳位时为实际扣掉的部分），
      因此 initial_stock + Σ quantity_change 恒等于当前 stock
    - shortfall_qty > 0 表示该次扣减被“钳位到 0”，缺口数量被掩盖，需人工关注
    - status_from / status_to：触发本次变动的订单状态迁移（manual 为空）
    """

    __tablename__ = "inventory_movements"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)

    product_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("products.id"), nullable=False
    )
    order_id: Mapped[Optional[int]] = mapped_column(
        sa.Integer, sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True
    )

    kind: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    quantity_change: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    stock_before: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    stock_after: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    shortfall_qty: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    status_from: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)
    status_to: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)

    actor_id: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        sa.CheckConstraint("stock_after >= 0", name="ck_movements_after_non_negative"),
        sa.CheckConstraint("shortfall_qty >= 0", name="ck_movements_shortfall_non_negative"),
        sa.CheckConstraint(
            "stock_after - stock_before = quantity_change", name="ck_movements_delta_matches"
        ),
        sa.Index("ix_inventory_movements_product", "product_id", "id"),
    )

    @property
    def is_clamped(self) -> bool:
        return int(self.shortfall_qty or 0) > 0

    def __repr__(self) -> str:
        return (
            f"<InventoryMovement {self.kind} product={self.product_id} order={self.order_id} "
            f"delta={self.quantity_change} {self.stock_before}->{self.stock_after} "
            f"shortfall={self.shortfall_qty}>"
        )
