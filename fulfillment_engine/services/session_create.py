# fulfillment_engine/services/session_create.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.core.tx import TxStrategy, get_tx_strategy
from fulfillment_engine.metrics import SESSIONS_CREATED
from fulfillment_engine.models.enums import OrderStatus, SessionStatus
from fulfillment_engine.models.fulfillment_session import FulfillmentSession, SessionOrderLink
from fulfillment_engine.models.pick_item import AggregatedPickItem
from fulfillment_engine.services.aggregation import aggregate_demand, check_stock, validate_batchable
from fulfillment_engine.services.errors import ValidationError
from fulfillment_engine.services.order_source import OrderSource
from fulfillment_engine.services.session_codes import next_session_code
from fulfillment_engine.services.session_loaders import open_session_ids_for_orders

logger = logging.getLogger("fulfillment.sessions")

UTC = timezone.utc


def _dedupe(order_ids: Sequence[int]) -> List[int]:
    seen: set[int] = set()
    out: List[int] = []
    for x in order_ids:
        oid = int(x)
        if oid not in seen:
            seen.add(oid)
            out.append(oid)
    return out


async def create_session(
    session: AsyncSession,
    *,
    store_id: int,
    order_ids: Sequence[int],
    actor_id: Optional[str] = None,
    order_source: Optional[OrderSource] = None,
    tx: Optional[TxStrategy] = None,
) -> FulfillmentSession:
    """
    建批次（picking 阶段）：

    1) 锁订单（id 升序）并做准入校验：存在 / confirmed / 不在其它未完成会话 / 行项目已映射
    2) 跨订单汇总需求，锁商品后对比当前库存；不足则逐商品报缺并拒绝
    3) 写会话、订单关联、汇总拣货行，订单统一迁移到 in_preparation
    """
    ids = _dedupe(order_ids)
    if not ids:
        raise ValidationError("至少需要一个订单", error_code="empty_batch")

    src = order_source or OrderSource(session)
    strategy = tx or get_tx_strategy()

    orders = await src.load_orders(ids, store_id=store_id, for_update=True)
    open_sessions = await open_session_ids_for_orders(session, ids)
    validate_batchable(ids, orders, open_sessions=open_sessions)

    ordered = [orders[oid] for oid in sorted(orders)]
    demand = aggregate_demand(ordered)
    await check_stock(session, demand.by_product, for_update=True)

    now = datetime.now(UTC)
    async with strategy.batch(session, "create_session"):
        code = await next_session_code(session, store_id=store_id, now=now)
        fs = FulfillmentSession(
            store_id=int(store_id),
            code=code,
            status=SessionStatus.PICKING.value,
            created_by=actor_id,
            picking_started_at=now,
            last_activity_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(fs)
        await session.flush()

        for order in ordered:
            session.add(SessionOrderLink(session_id=fs.id, order_id=order.id, added_at=now))
        for pid in sorted(demand.by_product):
            session.add(
                AggregatedPickItem(
                    session_id=fs.id,
                    product_id=pid,
                    total_quantity_needed=demand.by_product[pid],
                    quantity_picked=0,
                    updated_at=now,
                )
            )
        await session.flush()

        for order in ordered:
            await src.transition_status(order, OrderStatus.IN_PREPARATION.value, actor_id=actor_id)
            await strategy.step_done(session)

    SESSIONS_CREATED.inc()
    logger.info(
        "SESSION_CREATED id=%s code=%s store=%s orders=%d products=%d by=%s",
        fs.id,
        fs.code,
        store_id,
        len(ordered),
        len(demand.by_product),
        actor_id,
    )
    return fs
