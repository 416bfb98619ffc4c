# fulfillment_engine/models/order_line_item.py
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment_engine.db.base import Base

if TYPE_CHECKING:
    from .order import Order


class OrderLineItem(Base):
    """规范化行项目；product_id 为空表示外部商品尚未映射到本地商品。"""

    __tablename__ = "order_line_items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[Optional[int]] = mapped_column(
        sa.Integer, sa.ForeignKey("products.id"), nullable=True, index=True
    )
    sku: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (sa.CheckConstraint("quantity > 0", name="ck_order_line_items_qty_positive"),)
