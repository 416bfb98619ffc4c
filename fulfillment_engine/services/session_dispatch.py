# fulfillment_engine/services/session_dispatch.py
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.models.enums import DISPATCHED_STATUSES, EARLY_STATUSES
from fulfillment_engine.models.inventory_movement import InventoryMovement
from fulfillment_engine.models.order import Order
from fulfillment_engine.services.session_loaders import (
    load_link,
    load_session,
    open_session_ids_for_orders,
)

logger = logging.getLogger("fulfillment.sessions")


def is_outside_dispatch(old_status: str, new_status: str) -> bool:
    """未经完成批次就直接进入 shipped / in_transit / delivered。"""
    return new_status in DISPATCHED_STATUSES and old_status in EARLY_STATUSES


async def lock_open_session_for_order(session: AsyncSession, order_id: int) -> Optional[int]:
    """
    改单前先锁订单所在的未结束会话，保持 会话 → 订单 的加锁顺序。
    """
    sid = (await open_session_ids_for_orders(session, [order_id])).get(int(order_id))
    if sid is not None:
        await load_session(session, sid, for_update=True)
    return sid


class SessionDispatchCleanup:
    """
    订单状态迁移的同步观察者（排在台账之后）。

    订单绕过仓库流程被直接发出时，把它从未结束的批次中摘除：
    删分配行、扣减拣货需求；批次变空则自动放弃。
    取消 / 拒绝不在此处理：订单留在批次里，打包与完成会明确拒绝它。
    """

    async def on_status_change(
        self,
        session: AsyncSession,
        order: Order,
        old_status: str,
        new_status: str,
        *,
        actor_id: Optional[str] = None,
    ) -> List[InventoryMovement]:
        if not is_outside_dispatch(old_status, new_status):
            return []

        sid = (await open_session_ids_for_orders(session, [order.id])).get(order.id)
        if sid is None:
            return []

        from fulfillment_engine.services.order_source import OrderSource
        from fulfillment_engine.services.session_abandon import detach_order_locked

        fs = await load_session(session, sid, for_update=True)
        link = await load_link(session, sid, order.id)
        remaining, abandoned = await detach_order_locked(
            session,
            fs,
            order,
            link=link,
            actor_id=actor_id,
            order_source=OrderSource(session),
            empty_reason=f"Order {order.id} processed outside warehouse (status: {new_status})",
        )
        logger.warning(
            "SESSION_ORDER_DISPATCHED_OUTSIDE session=%s order=%s status=%s remaining=%d auto_abandoned=%s",
            fs.id,
            order.id,
            new_status,
            remaining,
            abandoned,
        )
        return []
