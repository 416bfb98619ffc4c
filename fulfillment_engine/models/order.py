# fulfillment_engine/models/order.py
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from fulfillment_engine.db.base import Base

if TYPE_CHECKING:
    from .order_line_item import OrderLineItem


def _OrderLineItem() -> "OrderLineItem":
    from .order_line_item import OrderLineItem

    return OrderLineItem


class Order(Base):
    """
    订单头（由订单子系统拥有；履约引擎只读行项目、只写 status）

    行项目来源二选一（line_item_source）：
    - normalized：order_line_items 表
    - embedded  ：本表 line_items JSON 列表 [{product_id, quantity, sku?, name?}]

    stock_deducted：台账已对该订单执行扣减且尚未回补。
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)
    order_number: Mapped[str] = mapped_column(sa.String(64), nullable=False)

    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, default="pending")

    line_item_source: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default="normalized"
    )
    line_items: Mapped[Optional[List[dict[str, Any]]]] = mapped_column(sa.JSON, nullable=True)

    stock_deducted: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    items: Mapped[List["OrderLineItem"]] = relationship(
        _OrderLineItem,
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderLineItem.id",
    )

    __table_args__ = (
        sa.UniqueConstraint("store_id", "order_number", name="uq_orders_store_number"),
        sa.Index("ix_orders_store_status", "store_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Order id={self.id} no={self.order_number} status={self.status}>"
