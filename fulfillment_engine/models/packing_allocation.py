# fulfillment_engine/models/packing_allocation.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from fulfillment_engine.db.base import Base


class PackingAllocation(Base):
    """每 (session, order, product) 一行；quantity_packed 每次 pack 只 +1。"""

    __tablename__ = "packing_allocations"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        sa.Integer,
        sa.ForeignKey("fulfillment_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("products.id"), nullable=False
    )

    quantity_needed: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    quantity_packed: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    packed_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "session_id", "order_id", "product_id", name="uq_packing_allocations"
        ),
        sa.CheckConstraint("quantity_packed >= 0", name="ck_packing_packed_non_negative"),
        sa.CheckConstraint("quantity_packed <= quantity_needed", name="ck_packing_packed_le_needed"),
        sa.Index("ix_packing_allocations_session_product", "session_id", "product_id"),
    )

    @property
    def is_complete(self) -> bool:
        return int(self.quantity_packed) >= int(self.quantity_needed)
