# fulfillment_engine/services/session_views.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.models.enums import OrderStatus, SessionStatus
from fulfillment_engine.models.fulfillment_session import FulfillmentSession, SessionOrderLink
from fulfillment_engine.models.order import Order
from fulfillment_engine.models.packing_allocation import PackingAllocation
from fulfillment_engine.models.pick_item import AggregatedPickItem
from fulfillment_engine.services.line_items import quantities_by_product
from fulfillment_engine.services.product_store import load_products
from fulfillment_engine.services.session_loaders import load_pick_items, load_session, session_order_ids
from fulfillment_engine.services.session_types import ActiveSessionView, PickListLine


def _open_link_subquery():
    return (
        select(SessionOrderLink.order_id)
        .join(FulfillmentSession, FulfillmentSession.id == SessionOrderLink.session_id)
        .where(FulfillmentSession.status != SessionStatus.COMPLETED.value)
    )


async def get_picking_list(
    session: AsyncSession,
    *,
    session_id: int,
    store_id: Optional[int] = None,
) -> List[PickListLine]:
    fs = await load_session(session, session_id, store_id=store_id)
    picks = await load_pick_items(session, fs.id)
    products = await load_products(session, picks.keys())
    out: List[PickListLine] = []
    for pid in sorted(picks):
        it = picks[pid]
        p = products.get(pid)
        out.append(
            PickListLine(
                product_id=pid,
                name=p.name if p else None,
                sku=p.sku if p else None,
                total_quantity_needed=int(it.total_quantity_needed),
                quantity_picked=int(it.quantity_picked),
                current_stock=int(p.stock) if p else 0,
                is_complete=it.is_complete,
            )
        )
    return out


async def get_session_detail(
    session: AsyncSession,
    *,
    session_id: int,
    store_id: Optional[int] = None,
) -> Dict[str, Any]:
    fs = await load_session(session, session_id, store_id=store_id)
    order_ids = await session_order_ids(session, fs.id)
    orders: List[Order] = []
    if order_ids:
        orders = list(
            (await session.execute(select(Order).where(Order.id.in_(order_ids)).order_by(Order.id.asc())))
            .scalars()
            .all()
        )
    return {
        "session": fs,
        "orders": orders,
        "picking_list": await get_picking_list(session, session_id=fs.id),
    }


async def get_active_sessions(
    session: AsyncSession,
    *,
    store_id: Optional[int] = None,
) -> List[ActiveSessionView]:
    stmt = select(FulfillmentSession).where(FulfillmentSession.status != SessionStatus.COMPLETED.value)
    if store_id is not None:
        stmt = stmt.where(FulfillmentSession.store_id == int(store_id))
    sessions = list((await session.execute(stmt.order_by(FulfillmentSession.id.desc()))).scalars().all())
    if not sessions:
        return []
    ids = [s.id for s in sessions]

    order_counts = dict(
        (
            await session.execute(
                select(SessionOrderLink.session_id, func.count(SessionOrderLink.id))
                .where(SessionOrderLink.session_id.in_(ids))
                .group_by(SessionOrderLink.session_id)
            )
        ).all()
    )
    pick_totals = {
        sid: (int(n or 0), int(p or 0))
        for sid, n, p in (
            await session.execute(
                select(
                    AggregatedPickItem.session_id,
                    func.sum(AggregatedPickItem.total_quantity_needed),
                    func.sum(AggregatedPickItem.quantity_picked),
                )
                .where(AggregatedPickItem.session_id.in_(ids))
                .group_by(AggregatedPickItem.session_id)
            )
        ).all()
    }
    packed_totals = dict(
        (
            await session.execute(
                select(PackingAllocation.session_id, func.sum(PackingAllocation.quantity_packed))
                .where(PackingAllocation.session_id.in_(ids))
                .group_by(PackingAllocation.session_id)
            )
        ).all()
    )

    return [
        ActiveSessionView(
            session_id=s.id,
            code=s.code,
            status=s.status,
            created_at=s.created_at,
            last_activity_at=s.last_activity_at,
            order_count=int(order_counts.get(s.id, 0)),
            total_needed=pick_totals.get(s.id, (0, 0))[0],
            total_picked=pick_totals.get(s.id, (0, 0))[1],
            total_packed=int(packed_totals.get(s.id) or 0),
        )
        for s in sessions
    ]


async def get_confirmed_orders(
    session: AsyncSession,
    *,
    store_id: int,
    limit: int = 200,
) -> List[Dict[str, Any]]:
    """可组批的订单：confirmed 且不在任何未完成会话中。"""
    stmt = (
        select(Order)
        .where(
            Order.store_id == int(store_id),
            Order.status == OrderStatus.CONFIRMED.value,
            Order.id.not_in(_open_link_subquery()),
        )
        .order_by(Order.created_at.asc(), Order.id.asc())
        .limit(int(limit))
    )
    orders = (await session.execute(stmt)).scalars().all()
    return [
        {
            "order_id": o.id,
            "order_number": o.order_number,
            "status": o.status,
            "line_item_source": o.line_item_source,
            "total_units": sum(quantities_by_product(o).values()),
            "created_at": o.created_at,
        }
        for o in orders
    ]


async def get_orphaned_orders(
    session: AsyncSession,
    *,
    store_id: int,
) -> List[Dict[str, Any]]:
    """卡在 in_preparation 却不属于任何未完成会话的订单（需人工退回 confirmed）。"""
    stmt = (
        select(Order)
        .where(
            Order.store_id == int(store_id),
            Order.status == OrderStatus.IN_PREPARATION.value,
            Order.id.not_in(_open_link_subquery()),
        )
        .order_by(Order.id.asc())
    )
    orders = (await session.execute(stmt)).scalars().all()
    return [
        {
            "order_id": o.id,
            "order_number": o.order_number,
            "status": o.status,
            "updated_at": o.updated_at,
        }
        for o in orders
    ]
