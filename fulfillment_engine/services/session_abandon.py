# fulfillment_engine/services/session_abandon.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.metrics import SESSIONS_ABANDONED
from fulfillment_engine.models.enums import OrderStatus, SessionStatus
from fulfillment_engine.models.fulfillment_session import FulfillmentSession, SessionOrderLink
from fulfillment_engine.models.order import Order
from fulfillment_engine.models.packing_allocation import PackingAllocation
from fulfillment_engine.services.errors import StateError, ValidationError
from fulfillment_engine.services.line_items import quantities_by_product
from fulfillment_engine.services.order_source import OrderSource
from fulfillment_engine.services.session_loaders import (
    load_link,
    load_pick_items,
    load_session,
    session_order_ids,
)
from fulfillment_engine.services.session_types import RemoveOrderResult, SessionSummary

logger = logging.getLogger("fulfillment.sessions")

UTC = timezone.utc

AUTO_ABANDON_EMPTY_REASON = "Auto-abandoned: No orders remaining"


def _require_open(fs: FulfillmentSession) -> None:
    if fs.status == SessionStatus.COMPLETED.value:
        code = "session_already_abandoned" if fs.abandoned_at is not None else "session_already_completed"
        raise StateError(
            f"会话 {fs.code} 已结束（{fs.outcome}）",
            error_code=code,
            context={"session_id": fs.id, "outcome": fs.outcome},
        )


async def abandon_locked(
    session: AsyncSession,
    fs: FulfillmentSession,
    *,
    reason: Optional[str],
    actor_id: Optional[str],
    trigger: str,
    order_source: OrderSource,
) -> SessionSummary:
    """
    调用方已持有会话行锁且确认会话未结束。

    仍在 in_preparation 的订单退回 confirmed；不动库存（此阶段尚未扣减）。
    """
    order_ids = await session_order_ids(session, fs.id)
    orders = await order_source.load_orders(order_ids, for_update=True)

    restored = 0
    for oid in sorted(orders):
        order = orders[oid]
        if order.status == OrderStatus.IN_PREPARATION.value:
            await order_source.transition_status(order, OrderStatus.CONFIRMED.value, actor_id=actor_id)
            restored += 1

    now = datetime.now(UTC)
    fs.status = SessionStatus.COMPLETED.value
    fs.completed_at = now
    fs.abandoned_at = now
    fs.abandoned_by = actor_id
    fs.abandon_reason = reason
    fs.last_activity_at = now
    fs.updated_at = now
    await session.flush()

    SESSIONS_ABANDONED.labels(trigger=trigger).inc()
    logger.info(
        "SESSION_ABANDONED id=%s code=%s trigger=%s restored=%d reason=%r",
        fs.id,
        fs.code,
        trigger,
        restored,
        reason,
    )
    return SessionSummary(
        session_id=fs.id,
        code=fs.code,
        outcome=fs.outcome,
        orders_total=len(order_ids),
        orders_restored=restored,
        abandoned_at=fs.abandoned_at,
        reason=reason,
    )


async def abandon_session(
    session: AsyncSession,
    *,
    session_id: int,
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
    store_id: Optional[int] = None,
    order_source: Optional[OrderSource] = None,
) -> SessionSummary:
    src = order_source or OrderSource(session)
    fs = await load_session(session, session_id, store_id=store_id, for_update=True)
    _require_open(fs)
    return await abandon_locked(
        session, fs, reason=reason, actor_id=actor_id, trigger="manual", order_source=src
    )


async def remove_order_from_session(
    session: AsyncSession,
    *,
    session_id: int,
    order_id: int,
    actor_id: Optional[str] = None,
    store_id: Optional[int] = None,
    order_source: Optional[OrderSource] = None,
) -> RemoveOrderResult:
    """
    从未结束的会话中摘除单个订单：

    - in_preparation 的订单退回 confirmed（其它状态保持不变）
    - 删除该订单的打包分配行，并从拣货汇总中扣掉它的需求（picked 同步封顶）
    - 会话内已无订单时自动放弃
    """
    src = order_source or OrderSource(session)

    fs = await load_session(session, session_id, store_id=store_id, for_update=True)
    _require_open(fs)

    link = await load_link(session, fs.id, order_id)
    if link is None:
        raise ValidationError(
            f"订单 {order_id} 不在会话 {fs.code} 中",
            error_code="order_not_in_session",
            context={"session_id": fs.id, "order_id": order_id},
        )

    order = await src.get_order(order_id, for_update=True)
    if order.status == OrderStatus.IN_PREPARATION.value:
        await src.transition_status(order, OrderStatus.CONFIRMED.value, actor_id=actor_id)

    remaining, auto_abandoned = await detach_order_locked(
        session,
        fs,
        order,
        link=link,
        actor_id=actor_id,
        order_source=src,
        empty_reason=AUTO_ABANDON_EMPTY_REASON,
    )

    logger.info(
        "SESSION_ORDER_REMOVED session=%s order=%s remaining=%d auto_abandoned=%s",
        fs.id,
        order.id,
        remaining,
        auto_abandoned,
    )
    return RemoveOrderResult(
        session_id=fs.id,
        order_id=order.id,
        removed=True,
        session_auto_abandoned=auto_abandoned,
        order_status=order.status,
        remaining_orders=remaining,
    )


async def detach_order_locked(
    session: AsyncSession,
    fs: FulfillmentSession,
    order: Order,
    *,
    link: SessionOrderLink,
    actor_id: Optional[str],
    order_source: OrderSource,
    empty_reason: str,
) -> Tuple[int, bool]:
    """
    调用方已持有会话与订单行锁。删分配行、扣拣货需求、删关联；
    会话变空时自动放弃。返回 (剩余订单数, 是否自动放弃)。
    """
    await session.execute(
        delete(PackingAllocation).where(
            PackingAllocation.session_id == fs.id,
            PackingAllocation.order_id == order.id,
        )
    )

    picks = await load_pick_items(session, fs.id, for_update=True)
    for pid, qty in quantities_by_product(order).items():
        it = picks.get(pid)
        if it is None:
            continue
        needed = int(it.total_quantity_needed) - int(qty)
        if needed <= 0:
            await session.delete(it)
            continue
        it.total_quantity_needed = needed
        it.quantity_picked = min(int(it.quantity_picked), needed)
        it.updated_at = datetime.now(UTC)

    await session.delete(link)
    now = datetime.now(UTC)
    fs.last_activity_at = now
    fs.updated_at = now
    await session.flush()

    remaining = len(await session_order_ids(session, fs.id))
    if remaining:
        return remaining, False
    await abandon_locked(
        session,
        fs,
        reason=empty_reason,
        actor_id=actor_id,
        trigger="auto_empty",
        order_source=order_source,
    )
    return 0, True
