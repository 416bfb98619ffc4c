# fulfillment_engine/models/fulfillment_session.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from fulfillment_engine.db.base import Base


class FulfillmentSession(Base):
    """
    履约批次（会话）

    状态机：picking → packing → completed
    - completed 同时覆盖“正常完成”和“放弃”，放弃以 abandoned_at 非空为标记
    - last_activity_at 每次会话内写操作都会刷新，用于滞留检测
    """

    __tablename__ = "fulfillment_sessions"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)

    # PREP-DDMMYYYY-NNN
    code: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="picking")
    created_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)

    picking_started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    picking_completed_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    packing_started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    packing_completed_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))

    last_activity_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))

    abandoned_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    abandoned_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    abandon_reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        sa.UniqueConstraint("store_id", "code", name="uq_fulfillment_sessions_store_code"),
        sa.Index("ix_fulfillment_sessions_store_status", "store_id", "status"),
    )

    @property
    def is_open(self) -> bool:
        return self.status != "completed"

    @property
    def outcome(self) -> str:
        if self.status != "completed":
            return "open"
        return "abandoned" if self.abandoned_at is not None else "completed"

    def __repr__(self) -> str:
        return f"<FulfillmentSession id={self.id} code={self.code} status={self.status}>"


class SessionOrderLink(Base):
    """会话 ↔ 订单；放弃后保留作历史。"""

    __tablename__ = "fulfillment_session_orders"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        sa.Integer,
        sa.ForeignKey("fulfillment_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    added_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        sa.UniqueConstraint("session_id", "order_id", name="uq_fulfillment_session_orders"),
    )
