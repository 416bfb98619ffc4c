# fulfillment_engine/services/session_picking.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.core.tx import TxStrategy, get_tx_strategy
from fulfillment_engine.models.enums import SessionStatus
from fulfillment_engine.models.fulfillment_session import FulfillmentSession
from fulfillment_engine.models.packing_allocation import PackingAllocation
from fulfillment_engine.models.pick_item import AggregatedPickItem
from fulfillment_engine.services.aggregation import check_stock
from fulfillment_engine.services.errors import (
    IncompleteError,
    NotFoundError,
    StateError,
    StockInsufficientError,
    ValidationError,
    shortage_detail,
)
from fulfillment_engine.services.line_items import quantities_by_product
from fulfillment_engine.services.order_source import OrderSource
from fulfillment_engine.services.product_store import get_product, load_products
from fulfillment_engine.services.session_loaders import (
    load_allocations,
    load_pick_item,
    load_pick_items,
    load_session,
    session_order_ids,
)

logger = logging.getLogger("fulfillment.sessions")

UTC = timezone.utc


def _require_phase(fs: FulfillmentSession, phase: str, *, op: str) -> None:
    if fs.status != phase:
        raise StateError(
            f"会话 {fs.code} 当前为 {fs.status}，不能执行 {op}",
            error_code=f"session_not_{phase}",
            context={"session_id": fs.id, "status": fs.status, "required": phase},
        )


async def report_picked(
    session: AsyncSession,
    *,
    session_id: int,
    product_id: int,
    quantity: int,
    store_id: Optional[int] = None,
) -> AggregatedPickItem:
    """
    上报拣货数量（绝对值，不是增量）：0 <= quantity <= total_quantity_needed，
    且不能超过商品当前库存（货架上不可能拣出比账面更多的货）。
    """
    fs = await load_session(session, session_id, store_id=store_id, for_update=True)
    _require_phase(fs, SessionStatus.PICKING.value, op="report_picked")

    item = await load_pick_item(session, fs.id, product_id, for_update=True)
    if item is None:
        raise NotFoundError(
            f"商品 {product_id} 不在会话 {fs.code} 的拣货单中",
            error_code="product_not_in_session",
            context={"session_id": fs.id, "product_id": product_id},
        )

    qty = int(quantity)
    if qty < 0 or qty > int(item.total_quantity_needed):
        raise ValidationError(
            "拣货数量超出范围",
            error_code="picked_out_of_range",
            details=[
                {
                    "type": "validation",
                    "path": "quantity",
                    "product_id": int(product_id),
                    "picked": qty,
                    "needed": int(item.total_quantity_needed),
                }
            ],
        )

    product = await get_product(session, product_id)
    if qty > int(product.stock):
        raise StockInsufficientError(
            "拣货数量超过当前库存",
            details=[
                shortage_detail(
                    product_id=product.id,
                    name=product.name,
                    sku=product.sku,
                    needed=qty,
                    available=int(product.stock),
                )
            ],
        )

    now = datetime.now(UTC)
    item.quantity_picked = qty
    item.picked_at = now if qty > 0 else None
    item.updated_at = now
    fs.last_activity_at = now
    fs.updated_at = now
    await session.flush()
    return item


async def finish_picking(
    session: AsyncSession,
    *,
    session_id: int,
    store_id: Optional[int] = None,
    order_source: Optional[OrderSource] = None,
    tx: Optional[TxStrategy] = None,
) -> FulfillmentSession:
    """
    picking → packing：

    - 每个拣货行必须 picked == needed，否则逐商品列出差异
    - 重新锁商品校验库存（建批次后库存可能已被其它业务消耗）
    - 按 (order, product) 播种打包分配行；已存在的行保留（降级路径可重入）
    """
    src = order_source or OrderSource(session)
    strategy = tx or get_tx_strategy()

    fs = await load_session(session, session_id, store_id=store_id, for_update=True)
    _require_phase(fs, SessionStatus.PICKING.value, op="finish_picking")

    order_ids = await session_order_ids(session, fs.id)
    orders = await src.load_orders(order_ids)

    items = await load_pick_items(session, fs.id, for_update=True)
    incomplete = [it for it in items.values() if not it.is_complete]
    if incomplete:
        products = await load_products(session, [it.product_id for it in incomplete])
        raise IncompleteError(
            "拣货未完成，不能进入打包",
            error_code="picking_incomplete",
            details=[
                {
                    "type": "diff",
                    "product_id": it.product_id,
                    "sku": products[it.product_id].sku if it.product_id in products else None,
                    "picked": int(it.quantity_picked),
                    "needed": int(it.total_quantity_needed),
                }
                for it in incomplete
            ],
            next_actions=[{"action": "continue_pick", "label": "继续拣货"}],
        )

    await check_stock(
        session,
        {pid: int(it.total_quantity_needed) for pid, it in items.items()},
        for_update=True,
    )

    now = datetime.now(UTC)
    async with strategy.batch(session, "finish_picking"):
        existing = {(a.order_id, a.product_id) for a in await load_allocations(session, fs.id)}
        for oid in sorted(orders):
            for pid, qty in sorted(quantities_by_product(orders[oid]).items()):
                if (oid, pid) in existing:
                    continue
                session.add(
                    PackingAllocation(
                        session_id=fs.id,
                        order_id=oid,
                        product_id=pid,
                        quantity_needed=int(qty),
                        quantity_packed=0,
                        updated_at=now,
                    )
                )
            await strategy.step_done(session)

        fs.status = SessionStatus.PACKING.value
        fs.picking_completed_at = now
        fs.packing_started_at = now
        fs.last_activity_at = now
        fs.updated_at = now
        await session.flush()

    logger.info("SESSION_PICKED id=%s code=%s orders=%d", fs.id, fs.code, len(orders))
    return fs
