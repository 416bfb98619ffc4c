# fulfillment_engine/services/session_complete.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.core.tx import TxStrategy, get_tx_strategy
from fulfillment_engine.metrics import SESSIONS_COMPLETED
from fulfillment_engine.models.enums import OrderStatus, SessionStatus
from fulfillment_engine.models.fulfillment_session import FulfillmentSession
from fulfillment_engine.services.errors import IncompleteError, StateError, order_state_detail
from fulfillment_engine.services.order_source import OrderSource
from fulfillment_engine.services.product_store import load_products
from fulfillment_engine.services.session_loaders import load_allocations, load_session, session_order_ids

logger = logging.getLogger("fulfillment.sessions")

UTC = timezone.utc

# 已在 ready_to_ship 的订单视为本批次已处理（降级路径中断后重试）
_COMPLETABLE = frozenset({OrderStatus.IN_PREPARATION.value, OrderStatus.READY_TO_SHIP.value})


async def complete_session(
    session: AsyncSession,
    *,
    session_id: int,
    actor_id: Optional[str] = None,
    store_id: Optional[int] = None,
    order_source: Optional[OrderSource] = None,
    tx: Optional[TxStrategy] = None,
) -> FulfillmentSession:
    """
    packing → completed：

    - 已完成的会话直接拒绝（重复调用绝不会二次扣减）
    - 订单必须仍在 in_preparation；被其它流程撤回的订单需先移出批次（先于装箱检查，
      撤回的订单永远装不满）
    - 所有分配行必须装满，否则逐项列出 (order, product, packed/needed)
    - 批量把订单迁移到 ready_to_ship（台账在同一事务内扣库存），然后关闭会话；
      原子策略下两者同进同退
    """
    src = order_source or OrderSource(session)
    strategy = tx or get_tx_strategy()

    fs = await load_session(session, session_id, store_id=store_id, for_update=True)
    if fs.status == SessionStatus.COMPLETED.value:
        raise StateError(
            f"会话 {fs.code} 已结束（{fs.outcome}）",
            error_code="session_already_completed",
            context={"session_id": fs.id, "outcome": fs.outcome},
        )
    if fs.status != SessionStatus.PACKING.value:
        raise StateError(
            f"会话 {fs.code} 当前为 {fs.status}，需先完成拣货",
            error_code="session_not_packing",
            context={"session_id": fs.id, "status": fs.status},
        )

    order_ids = await session_order_ids(session, fs.id)
    orders = await src.load_orders(order_ids, for_update=True)

    blocked = [o for o in orders.values() if o.status not in _COMPLETABLE]
    if blocked:
        raise StateError(
            "批次中有订单已被其它流程撤回或改变状态",
            error_code="orders_withdrawn",
            details=[
                order_state_detail(order_id=o.id, order_number=o.order_number, status=o.status)
                for o in sorted(blocked, key=lambda x: x.id)
            ],
            next_actions=[{"action": "remove_order", "label": "从批次中移除这些订单"}],
        )

    allocs = await load_allocations(session, fs.id)
    unpacked = [a for a in allocs if not a.is_complete]
    if unpacked:
        products = await load_products(session, {a.product_id for a in unpacked})
        raise IncompleteError(
            "仍有未装完的订单，不能完成会话",
            error_code="packing_incomplete",
            details=[
                {
                    "type": "diff",
                    "order_id": a.order_id,
                    "order_number": orders[a.order_id].order_number if a.order_id in orders else None,
                    "product_id": a.product_id,
                    "sku": products[a.product_id].sku if a.product_id in products else None,
                    "packed": int(a.quantity_packed),
                    "needed": int(a.quantity_needed),
                }
                for a in unpacked
            ],
            next_actions=[{"action": "continue_pack", "label": "继续打包"}],
        )

    now = datetime.now(UTC)
    moved = 0
    async with strategy.batch(session, "complete_session"):
        for oid in sorted(orders):
            order = orders[oid]
            if order.status != OrderStatus.IN_PREPARATION.value:
                continue
            await src.transition_status(order, OrderStatus.READY_TO_SHIP.value, actor_id=actor_id)
            moved += 1
            await strategy.step_done(session)

        fs.status = SessionStatus.COMPLETED.value
        fs.packing_completed_at = now
        fs.completed_at = now
        fs.last_activity_at = now
        fs.updated_at = now
        await session.flush()

    SESSIONS_COMPLETED.inc()
    logger.info(
        "SESSION_COMPLETED id=%s code=%s orders=%d moved=%d tx=%s",
        fs.id,
        fs.code,
        len(orders),
        moved,
        strategy.name,
    )
    return fs
