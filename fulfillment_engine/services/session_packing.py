# fulfillment_engine/services/session_packing.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.metrics import PACK_UNITS
from fulfillment_engine.models.enums import STOCK_COMMITTED_STATUSES, WITHDRAWN_STATUSES, OrderStatus, SessionStatus
from fulfillment_engine.models.packing_allocation import PackingAllocation
from fulfillment_engine.services.errors import ConflictError, NotFoundError, StateError, ValidationError
from fulfillment_engine.services.order_source import OrderSource
from fulfillment_engine.services.product_store import load_products
from fulfillment_engine.services.session_loaders import (
    load_allocation,
    load_allocations,
    load_link,
    load_pick_item,
    load_pick_items,
    load_session,
    packed_total,
)
from fulfillment_engine.services.session_types import (
    PackingItemView,
    PackingOrderView,
    PackingView,
    SharedPoolLine,
)

logger = logging.getLogger("fulfillment.allocation")

UTC = timezone.utc


def _order_not_packable(order_id: int, order_number: str, status: str) -> StateError:
    if status in STOCK_COMMITTED_STATUSES:
        code, msg = "order_already_finalized", f"订单 {order_number} 已完成（{status}），不能再打包"
    elif status in WITHDRAWN_STATUSES:
        code, msg = "order_withdrawn", f"订单 {order_number} 已被撤回（{status}），不能再打包"
    else:
        code, msg = "order_not_in_preparation", f"订单 {order_number} 状态为 {status}，不能打包"
    return StateError(
        msg + "；请将其从批次中移除",
        error_code=code,
        context={"order_id": order_id, "status": status},
        next_actions=[{"action": "remove_from_session", "label": "从批次中移除订单"}],
    )


async def pack_unit(
    session: AsyncSession,
    *,
    session_id: int,
    order_id: int,
    product_id: int,
    store_id: Optional[int] = None,
    order_source: Optional[OrderSource] = None,
) -> PackingAllocation:
    """
    从共享池分配 1 件到指定订单。

    加锁顺序：会话 → 订单 → 分配行 → 拣货行；全部前置条件都在锁内基于已提交状态判断：
    - 会话处于 packing
    - 订单仍为 in_preparation（已完成 / 已撤回的订单必须先移出批次）
    - 该订单该商品未装满
    - 会话内该商品已分配合计 < 已拣数量（共享池未耗尽）
    """
    src = order_source or OrderSource(session)

    try:
        fs = await load_session(session, session_id, store_id=store_id, for_update=True)
        if fs.status != SessionStatus.PACKING.value:
            raise StateError(
                f"会话 {fs.code} 当前为 {fs.status}，不能打包",
                error_code="session_not_packing",
                context={"session_id": fs.id, "status": fs.status},
            )

        if await load_link(session, fs.id, order_id) is None:
            raise ValidationError(
                f"订单 {order_id} 不在会话 {fs.code} 中",
                error_code="order_not_in_session",
                context={"session_id": fs.id, "order_id": order_id},
            )

        order = await src.get_order(order_id, for_update=True)
        if order.status != OrderStatus.IN_PREPARATION.value:
            raise _order_not_packable(order.id, order.order_number, order.status)

        alloc = await load_allocation(session, fs.id, order_id, product_id, for_update=True)
        if alloc is None:
            raise NotFoundError(
                f"订单 {order.order_number} 不需要商品 {product_id}",
                error_code="product_not_in_order",
                context={"session_id": fs.id, "order_id": order_id, "product_id": product_id},
            )
        if int(alloc.quantity_packed) >= int(alloc.quantity_needed):
            raise ConflictError(
                f"订单 {order.order_number} 的商品 {product_id} 已装满",
                error_code="allocation_full",
                details=[
                    {
                        "type": "diff",
                        "order_id": order_id,
                        "product_id": product_id,
                        "packed": int(alloc.quantity_packed),
                        "needed": int(alloc.quantity_needed),
                    }
                ],
            )

        pick = await load_pick_item(session, fs.id, product_id, for_update=True)
        picked = int(pick.quantity_picked) if pick is not None else 0
        packed = await packed_total(session, fs.id, product_id)
        if packed >= picked:
            raise ConflictError(
                f"商品 {product_id} 的已拣数量已全部分配",
                error_code="pool_exhausted",
                details=[
                    {
                        "type": "diff",
                        "product_id": product_id,
                        "picked": picked,
                        "packed": packed,
                    }
                ],
                next_actions=[{"action": "refresh", "label": "刷新打包视图"}],
            )
    except ConflictError:
        PACK_UNITS.labels(result="conflict").inc()
        raise
    except StateError:
        PACK_UNITS.labels(result="state").inc()
        raise

    now = datetime.now(UTC)
    alloc.quantity_packed = int(alloc.quantity_packed) + 1
    alloc.packed_at = now
    alloc.updated_at = now
    fs.last_activity_at = now
    fs.updated_at = now
    await session.flush()

    PACK_UNITS.labels(result="ok").inc()
    logger.debug(
        "PACK_UNIT session=%s order=%s product=%s packed=%s/%s",
        fs.id,
        order_id,
        product_id,
        alloc.quantity_packed,
        alloc.quantity_needed,
    )
    return alloc


async def get_packing_view(
    session: AsyncSession,
    *,
    session_id: int,
    store_id: Optional[int] = None,
    order_source: Optional[OrderSource] = None,
) -> PackingView:
    """打包视图：订单 × 商品的装箱进度 + 每个商品的共享池余量。"""
    src = order_source or OrderSource(session)
    fs = await load_session(session, session_id, store_id=store_id)

    allocs = await load_allocations(session, fs.id)
    picks = await load_pick_items(session, fs.id)
    orders = await src.load_orders({a.order_id for a in allocs})
    products = await load_products(session, set(picks) | {a.product_id for a in allocs})

    per_order: Dict[int, List[PackingItemView]] = {}
    packed_by_product: Dict[int, int] = {}
    for a in allocs:
        p = products.get(a.product_id)
        per_order.setdefault(a.order_id, []).append(
            PackingItemView(
                product_id=a.product_id,
                name=p.name if p else None,
                sku=p.sku if p else None,
                quantity_needed=int(a.quantity_needed),
                quantity_packed=int(a.quantity_packed),
                is_complete=a.is_complete,
            )
        )
        packed_by_product[a.product_id] = packed_by_product.get(a.product_id, 0) + int(a.quantity_packed)

    order_views = [
        PackingOrderView(
            order_id=oid,
            order_number=orders[oid].order_number if oid in orders else str(oid),
            status=orders[oid].status if oid in orders else "unknown",
            items=items,
            is_complete=all(i.is_complete for i in items),
        )
        for oid, items in sorted(per_order.items())
    ]

    pool = []
    for pid in sorted(picks):
        it = picks[pid]
        p = products.get(pid)
        packed = packed_by_product.get(pid, 0)
        pool.append(
            SharedPoolLine(
                product_id=pid,
                name=p.name if p else None,
                sku=p.sku if p else None,
                quantity_picked=int(it.quantity_picked),
                quantity_packed=packed,
                remaining=int(it.quantity_picked) - packed,
            )
        )

    return PackingView(
        session_id=fs.id,
        code=fs.code,
        status=fs.status,
        orders=order_views,
        shared_pool=pool,
    )
