# fulfillment_engine/models/pick_item.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from fulfillment_engine.db.base import Base


class AggregatedPickItem(Base):
    """
    每 (session, product) 一行：
    - total_quantity_needed：会话内所有订单对该商品的需求合计
    - quantity_picked      ：拣货员上报（绝对值），0 <= picked <= needed
    """

    __tablename__ = "session_pick_items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        sa.Integer,
        sa.ForeignKey("fulfillment_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("products.id"), nullable=False
    )

    total_quantity_needed: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    quantity_picked: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    picked_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        sa.UniqueConstraint("session_id", "product_id", name="uq_session_pick_items"),
        sa.CheckConstraint("quantity_picked >= 0", name="ck_pick_items_picked_non_negative"),
        sa.CheckConstraint(
            "quantity_picked <= total_quantity_needed", name="ck_pick_items_picked_le_needed"
        ),
    )

    @property
    def is_complete(self) -> bool:
        return int(self.quantity_picked) == int(self.total_quantity_needed)
