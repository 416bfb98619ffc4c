# fulfillment_engine/models/product.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from fulfillment_engine.db.base import Base


class Product(Base):
    """
    商品 + 可用库存计数器。

    stock 只能经由 Consistency Ledger（services/stock_ledger.py）修改；
    initial_stock 为建档时的基线，用于台账重放校验：
        initial_stock + Σ movement.quantity_change == stock
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)

    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)

    stock: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    initial_stock: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        sa.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        sa.CheckConstraint("initial_stock >= 0", name="ck_products_initial_stock_non_negative"),
        sa.Index("ix_products_store_sku", "store_id", "sku"),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku} stock={self.stock}>"
