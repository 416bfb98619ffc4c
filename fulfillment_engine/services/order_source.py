# fulfillment_engine/services/order_source.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.models.enums import (
    ALL_ORDER_STATUSES,
    DISPATCHED_STATUSES,
    STOCK_COMMITTED_STATUSES,
    LineItemSource,
)
from fulfillment_engine.models.inventory_movement import InventoryMovement
from fulfillment_engine.models.order import Order
from fulfillment_engine.models.order_line_item import OrderLineItem
from fulfillment_engine.services.errors import NotFoundError, StateError, ValidationError
from fulfillment_engine.services.session_dispatch import (
    SessionDispatchCleanup,
    lock_open_session_for_order,
)
from fulfillment_engine.services.session_loaders import open_session_ids_for_orders
from fulfillment_engine.services.stock_ledger import StockLedger, assert_order_mutable

logger = logging.getLogger("fulfillment.orders")

UTC = timezone.utc


class StatusObserver(Protocol):
    async def on_status_change(
        self,
        session: AsyncSession,
        order: Order,
        old_status: str,
        new_status: str,
        *,
        actor_id: Optional[str] = None,
    ) -> List[InventoryMovement]: ...


class OrderSource:
    """
    订单子系统的窄接口：读行项目、写状态。

    transition_status 是唯一的状态写入口；观察者（台账、批次摘除）在同一事务内同步执行，
    任何观察者抛错都会让整个状态迁移随调用方的事务一起回滚。
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        observers: Optional[Sequence[StatusObserver]] = None,
    ) -> None:
        self.session = session
        self.observers: List[StatusObserver] = (
            list(observers)
            if observers is not None
            else [StockLedger(), SessionDispatchCleanup()]
        )

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    async def get_order(
        self,
        order_id: int,
        *,
        store_id: Optional[int] = None,
        for_update: bool = False,
    ) -> Order:
        stmt = select(Order).where(Order.id == int(order_id))
        if for_update:
            stmt = stmt.with_for_update(of=Order).execution_options(populate_existing=True)
        order = (await self.session.execute(stmt)).scalars().first()
        if order is None or (store_id is not None and order.store_id != int(store_id)):
            raise NotFoundError(f"订单不存在：id={order_id}", context={"order_id": order_id})
        return order

    async def load_orders(
        self,
        order_ids: Iterable[int],
        *,
        store_id: Optional[int] = None,
        for_update: bool = False,
    ) -> Dict[int, Order]:
        """按 id 升序加载（加锁顺序固定）；跨店铺的订单视为不存在。"""
        ids = sorted({int(x) for x in order_ids})
        if not ids:
            return {}
        stmt = select(Order).where(Order.id.in_(ids)).order_by(Order.id.asc())
        if store_id is not None:
            stmt = stmt.where(Order.store_id == int(store_id))
        if for_update:
            stmt = stmt.with_for_update(of=Order).execution_options(populate_existing=True)
        rows = (await self.session.execute(stmt)).scalars().all()
        return {o.id: o for o in rows}

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    async def create_order(
        self,
        *,
        store_id: int,
        order_number: str,
        items: Sequence[Dict[str, Any]],
        source: str = LineItemSource.NORMALIZED.value,
        status: str = "confirmed",
    ) -> Order:
        """
        新建订单（订单子系统入口，主要供导入 / 测试使用）。
        不允许直接以已出库状态建单，否则会绕过台账。
        """
        _check_status(status)
        if status in STOCK_COMMITTED_STATUSES:
            raise ValidationError(
                f"不能以 {status} 状态直接建单",
                error_code="invalid_initial_status",
                context={"status": status},
            )

        now = datetime.now(UTC)
        order = Order(
            store_id=int(store_id),
            order_number=order_number,
            status=status,
            line_item_source=source,
            stock_deducted=False,
            created_at=now,
            updated_at=now,
        )
        if source == LineItemSource.EMBEDDED.value:
            order.line_items = [dict(i) for i in items]
            order.items = []
        elif source == LineItemSource.NORMALIZED.value:
            order.line_items = None
            order.items = [_line_row(i) for i in items]
        else:
            raise ValidationError(
                f"未知行项目来源：{source!r}", error_code="unknown_line_item_source"
            )
        self.session.add(order)
        await self.session.flush()
        return order

    async def transition_status(
        self,
        order: Order,
        new_status: str,
        *,
        actor_id: Optional[str] = None,
    ) -> List[InventoryMovement]:
        """调用方必须已持有该订单行锁。"""
        _check_status(new_status)
        old_status = order.status
        if old_status == new_status:
            return []

        order.status = new_status
        order.updated_at = datetime.now(UTC)

        movements: List[InventoryMovement] = []
        for obs in self.observers:
            movements.extend(
                await obs.on_status_change(
                    self.session, order, old_status, new_status, actor_id=actor_id
                )
            )
        await self.session.flush()
        logger.debug(
            "ORDER_STATUS order=%s %s->%s movements=%d", order.id, old_status, new_status, len(movements)
        )
        return movements

    async def change_order_status(
        self,
        order_id: int,
        new_status: str,
        *,
        actor_id: Optional[str] = None,
        store_id: Optional[int] = None,
    ) -> Order:
        if new_status in DISPATCHED_STATUSES:
            await lock_open_session_for_order(self.session, order_id)
        order = await self.get_order(order_id, store_id=store_id, for_update=True)
        await self.transition_status(order, new_status, actor_id=actor_id)
        return order

    async def replace_line_items(
        self,
        order_id: int,
        items: Sequence[Dict[str, Any]],
        *,
        store_id: Optional[int] = None,
    ) -> Order:
        order = await self.get_order(order_id, store_id=store_id, for_update=True)
        assert_order_mutable(order, action="edit_line_items")
        await _refuse_if_in_open_session(self.session, order, action="edit_line_items")

        if order.line_item_source == LineItemSource.EMBEDDED.value:
            order.line_items = [dict(i) for i in items]
        else:
            order.items = [_line_row(i) for i in items]
        order.updated_at = datetime.now(UTC)
        await self.session.flush()
        return order

    async def delete_order(self, order_id: int, *, store_id: Optional[int] = None) -> None:
        order = await self.get_order(order_id, store_id=store_id, for_update=True)
        assert_order_mutable(order, action="delete")
        await _refuse_if_in_open_session(self.session, order, action="delete")
        await self.session.delete(order)
        await self.session.flush()


def _check_status(status: str) -> None:
    if status not in ALL_ORDER_STATUSES:
        raise ValidationError(
            f"未知订单状态：{status!r}",
            error_code="unknown_order_status",
            context={"status": status, "allowed": sorted(ALL_ORDER_STATUSES)},
        )


def _line_row(raw: Dict[str, Any]) -> OrderLineItem:
    qty = int(raw.get("quantity") or 0)
    if qty <= 0:
        raise ValidationError("行项目数量必须 > 0", error_code="invalid_quantity", context={"item": raw})
    pid = raw.get("product_id")
    return OrderLineItem(
        product_id=int(pid) if pid is not None else None,
        sku=raw.get("sku"),
        name=raw.get("name"),
        quantity=qty,
    )


async def _refuse_if_in_open_session(session: AsyncSession, order: Order, *, action: str) -> None:
    open_ids = await open_session_ids_for_orders(session, [order.id])
    if open_ids:
        raise StateError(
            "订单正在履约批次中，请先从批次中移除",
            error_code="order_in_open_session",
            context={"order_id": order.id, "session_id": open_ids[order.id], "action": action},
            next_actions=[{"action": "remove_from_session", "label": "从批次中移除订单"}],
        )
