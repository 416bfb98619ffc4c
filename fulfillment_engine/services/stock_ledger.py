# fulfillment_engine/services/stock_ledger.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.metrics import STOCK_CLAMPED, STOCK_MOVEMENTS
from fulfillment_engine.models.enums import (
    CANCEL_STATUSES,
    DECREMENT_STATUSES,
    EARLY_STATUSES,
    STOCK_COMMITTED_STATUSES,
    MovementKind,
)
from fulfillment_engine.models.inventory_movement import InventoryMovement
from fulfillment_engine.models.order import Order
from fulfillment_engine.models.product import Product
from fulfillment_engine.services.audit_sink import queue_movements
from fulfillment_engine.services.errors import StateError, ValidationError
from fulfillment_engine.services.line_items import quantities_by_product
from fulfillment_engine.services.product_store import get_product, load_products

logger = logging.getLogger("fulfillment.ledger")

UTC = timezone.utc

_ORDER_KINDS = (
    MovementKind.READY.value,
    MovementKind.CANCELLED.value,
    MovementKind.REVERTED.value,
)


def assert_order_mutable(order: Order, *, action: str = "modify") -> None:
    """
    库存已出的订单：行项目冻结、不可删除。
    要撤销只能走取消（台账回补），否则重放不变量会被破坏。
    """
    if order.status in STOCK_COMMITTED_STATUSES or order.stock_deducted:
        raise StateError(
            "库存已扣减，不能修改或删除订单；请改为取消订单",
            error_code="stock_already_decremented",
            context={"order_id": order.id, "status": order.status, "action": action},
            next_actions=[{"action": "cancel_order", "label": "取消订单（回补库存）"}],
        )


class StockLedger:
    """
    Consistency Ledger：订单状态迁移的同步观察者。

    由 OrderSource.transition_status 在同一事务内调用；本类是 Product.stock 的唯一写入方。

    规则：
    - 进入 {ready_to_ship, shipped, in_transit}，且来源不在已出库集合、订单未扣减 → 扣减（ready）
    - 从已出库集合进入 {cancelled, rejected} → 回补（cancelled）
    - 从已出库集合回退到 {pending, confirmed, in_preparation} → 回补（reverted）
    - 回补数量 = 该订单该商品在台账上的净扣减量（钳位过的扣减不会被多补）
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
        if old_status == new_status:
            return []

        if (
            new_status in DECREMENT_STATUSES
            and old_status not in STOCK_COMMITTED_STATUSES
            and not order.stock_deducted
        ):
            return await self._decrement(session, order, old_status, new_status, actor_id)

        if old_status in STOCK_COMMITTED_STATUSES and order.stock_deducted:
            if new_status in CANCEL_STATUSES:
                kind = MovementKind.CANCELLED.value
            elif new_status in EARLY_STATUSES:
                kind = MovementKind.REVERTED.value
            else:
                return []
            return await self._restore(session, order, kind, old_status, new_status, actor_id)

        return []

    async def _decrement(
        self,
        session: AsyncSession,
        order: Order,
        old_status: str,
        new_status: str,
        actor_id: Optional[str],
    ) -> List[InventoryMovement]:
        needs = quantities_by_product(order)
        products = await load_products(session, needs.keys(), for_update=True)

        now = datetime.now(UTC)
        movements: List[InventoryMovement] = []
        for pid in sorted(needs):
            qty = needs[pid]
            p = products.get(pid)
            if p is None:
                raise ValidationError(
                    f"订单 {order.order_number} 引用的商品不存在：id={pid}",
                    error_code="product_not_found",
                    context={"order_id": order.id, "product_id": pid},
                )

            before = int(p.stock)
            after = max(0, before - qty)
            shortfall = qty - (before - after)
            notes = None
            if shortfall > 0:
                notes = f"clamped at zero: needed {qty}, available {before}"
                STOCK_CLAMPED.inc()
                logger.warning(
                    "STOCK_CLAMPED product=%s sku=%s order=%s needed=%s available=%s shortfall=%s",
                    p.id,
                    p.sku,
                    order.id,
                    qty,
                    before,
                    shortfall,
                )

            movements.append(
                self._write(
                    session,
                    product=p,
                    order=order,
                    kind=MovementKind.READY.value,
                    before=before,
                    after=after,
                    shortfall=shortfall,
                    old_status=old_status,
                    new_status=new_status,
                    actor_id=actor_id,
                    notes=notes,
                    now=now,
                )
            )

        order.stock_deducted = True
        await session.flush()
        queue_movements(session, movements)
        return movements

    async def _restore(
        self,
        session: AsyncSession,
        order: Order,
        kind: str,
        old_status: str,
        new_status: str,
        actor_id: Optional[str],
    ) -> List[InventoryMovement]:
        taken = await net_deducted_by_product(session, order.id)
        products = await load_products(session, taken.keys(), for_update=True)

        now = datetime.now(UTC)
        movements: List[InventoryMovement] = []
        for pid in sorted(taken):
            qty = taken[pid]
            p = products.get(pid)
            if qty <= 0 or p is None:
                continue
            before = int(p.stock)
            movements.append(
                self._write(
                    session,
                    product=p,
                    order=order,
                    kind=kind,
                    before=before,
                    after=before + qty,
                    shortfall=0,
                    old_status=old_status,
                    new_status=new_status,
                    actor_id=actor_id,
                    notes=None,
                    now=now,
                )
            )

        order.stock_deducted = False
        await session.flush()
        queue_movements(session, movements)
        return movements

    @staticmethod
    def _write(
        session: AsyncSession,
        *,
        product: Product,
        order: Optional[Order],
        kind: str,
        before: int,
        after: int,
        shortfall: int,
        old_status: Optional[str],
        new_status: Optional[str],
        actor_id: Optional[str],
        notes: Optional[str],
        now: datetime,
    ) -> InventoryMovement:
        product.stock = after
        product.updated_at = now
        m = InventoryMovement(
            store_id=product.store_id,
            product_id=product.id,
            order_id=order.id if order is not None else None,
            kind=kind,
            quantity_change=after - before,
            stock_before=before,
            stock_after=after,
            shortfall_qty=shortfall,
            status_from=old_status,
            status_to=new_status,
            actor_id=actor_id,
            notes=notes,
            created_at=now,
        )
        session.add(m)
        STOCK_MOVEMENTS.labels(kind=kind).inc()
        return m


async def net_deducted_by_product(session: AsyncSession, order_id: int) -> Dict[int, int]:
    """该订单在台账上按商品的净扣减量（正数 = 仍被占用）。"""
    rows = (
        await session.execute(
            select(InventoryMovement.product_id, func.sum(InventoryMovement.quantity_change))
            .where(
                InventoryMovement.order_id == int(order_id),
                InventoryMovement.kind.in_(_ORDER_KINDS),
            )
            .group_by(InventoryMovement.product_id)
        )
    ).all()
    return {int(pid): -int(total or 0) for pid, total in rows}


async def adjust_stock(
    session: AsyncSession,
    *,
    product_id: int,
    delta: int,
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
    store_id: Optional[int] = None,
) -> InventoryMovement:
    """
    手工校正（盘点 / 报损 / 到货）：同样写台账，结果为负直接拒绝（不钳位）。
    """
    if int(delta) == 0:
        raise ValidationError("调整数量不能为 0", error_code="zero_adjustment")

    p = await get_product(session, product_id, store_id=store_id, for_update=True)
    before = int(p.stock)
    after = before + int(delta)
    if after < 0:
        raise ValidationError(
            "调整后库存为负，已拒绝",
            error_code="negative_stock",
            details=[
                {
                    "type": "shortage",
                    "product_id": p.id,
                    "sku": p.sku,
                    "available": before,
                    "delta": int(delta),
                }
            ],
        )

    m = StockLedger._write(
        session,
        product=p,
        order=None,
        kind=MovementKind.MANUAL.value,
        before=before,
        after=after,
        shortfall=0,
        old_status=None,
        new_status=None,
        actor_id=actor_id,
        notes=reason,
        now=datetime.now(UTC),
    )
    await session.flush()
    queue_movements(session, [m])
    logger.info("MANUAL_ADJUST product=%s delta=%s %s->%s by=%s", p.id, delta, before, after, actor_id)
    return m


async def list_movements(
    session: AsyncSession,
    *,
    product_id: Optional[int] = None,
    order_id: Optional[int] = None,
    store_id: Optional[int] = None,
    limit: int = 200,
) -> List[InventoryMovement]:
    stmt = select(InventoryMovement)
    if product_id is not None:
        stmt = stmt.where(InventoryMovement.product_id == int(product_id))
    if order_id is not None:
        stmt = stmt.where(InventoryMovement.order_id == int(order_id))
    if store_id is not None:
        stmt = stmt.where(InventoryMovement.store_id == int(store_id))
    stmt = stmt.order_by(InventoryMovement.id.asc()).limit(int(limit))
    return list((await session.execute(stmt)).scalars().all())
