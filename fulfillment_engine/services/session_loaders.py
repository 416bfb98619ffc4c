# fulfillment_engine/services/session_loaders.py
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.models.fulfillment_session import FulfillmentSession, SessionOrderLink
from fulfillment_engine.models.packing_allocation import PackingAllocation
from fulfillment_engine.models.pick_item import AggregatedPickItem
from fulfillment_engine.services.errors import NotFoundError


async def load_session(
    session: AsyncSession,
    session_id: int,
    *,
    store_id: Optional[int] = None,
    for_update: bool = False,
) -> FulfillmentSession:
    stmt = select(FulfillmentSession).where(FulfillmentSession.id == int(session_id))
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    fs = (await session.execute(stmt)).scalars().first()
    # 跨店铺访问按“不存在”处理，不泄露其它店铺的会话
    if fs is None or (store_id is not None and fs.store_id != int(store_id)):
        raise NotFoundError(
            f"履约会话不存在：id={session_id}", context={"session_id": session_id}
        )
    return fs


async def session_order_ids(session: AsyncSession, session_id: int) -> List[int]:
    rows = await session.execute(
        select(SessionOrderLink.order_id)
        .where(SessionOrderLink.session_id == int(session_id))
        .order_by(SessionOrderLink.order_id.asc())
    )
    return [int(x) for x in rows.scalars().all()]


async def load_link(
    session: AsyncSession, session_id: int, order_id: int
) -> Optional[SessionOrderLink]:
    res = await session.execute(
        select(SessionOrderLink).where(
            SessionOrderLink.session_id == int(session_id),
            SessionOrderLink.order_id == int(order_id),
        )
    )
    return res.scalars().first()


async def open_session_ids_for_orders(
    session: AsyncSession,
    order_ids: Iterable[int],
    *,
    exclude_session_id: Optional[int] = None,
) -> Dict[int, int]:
    """order_id → 所在的未完成会话 id（一个订单同一时刻至多属于一个未完成会话）。"""
    ids = sorted({int(x) for x in order_ids})
    if not ids:
        return {}
    stmt = (
        select(SessionOrderLink.order_id, SessionOrderLink.session_id)
        .join(FulfillmentSession, FulfillmentSession.id == SessionOrderLink.session_id)
        .where(
            SessionOrderLink.order_id.in_(ids),
            FulfillmentSession.status != "completed",
        )
    )
    if exclude_session_id is not None:
        stmt = stmt.where(SessionOrderLink.session_id != int(exclude_session_id))
    return {int(oid): int(sid) for oid, sid in (await session.execute(stmt)).all()}


async def load_pick_items(
    session: AsyncSession,
    session_id: int,
    *,
    for_update: bool = False,
) -> Dict[int, AggregatedPickItem]:
    stmt = (
        select(AggregatedPickItem)
        .where(AggregatedPickItem.session_id == int(session_id))
        .order_by(AggregatedPickItem.product_id.asc())
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    rows = (await session.execute(stmt)).scalars().all()
    return {int(r.product_id): r for r in rows}


async def load_pick_item(
    session: AsyncSession,
    session_id: int,
    product_id: int,
    *,
    for_update: bool = False,
) -> Optional[AggregatedPickItem]:
    stmt = select(AggregatedPickItem).where(
        AggregatedPickItem.session_id == int(session_id),
        AggregatedPickItem.product_id == int(product_id),
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalars().first()


async def load_allocations(
    session: AsyncSession,
    session_id: int,
    *,
    order_id: Optional[int] = None,
    for_update: bool = False,
) -> List[PackingAllocation]:
    stmt = select(PackingAllocation).where(PackingAllocation.session_id == int(session_id))
    if order_id is not None:
        stmt = stmt.where(PackingAllocation.order_id == int(order_id))
    stmt = stmt.order_by(PackingAllocation.order_id.asc(), PackingAllocation.product_id.asc())
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return list((await session.execute(stmt)).scalars().all())


async def load_allocation(
    session: AsyncSession,
    session_id: int,
    order_id: int,
    product_id: int,
    *,
    for_update: bool = False,
) -> Optional[PackingAllocation]:
    stmt = select(PackingAllocation).where(
        PackingAllocation.session_id == int(session_id),
        PackingAllocation.order_id == int(order_id),
        PackingAllocation.product_id == int(product_id),
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalars().first()


async def packed_total(session: AsyncSession, session_id: int, product_id: int) -> int:
    """会话内该商品已分配到各订单的件数合计。"""
    res = await session.execute(
        select(func.coalesce(func.sum(PackingAllocation.quantity_packed), 0)).where(
            PackingAllocation.session_id == int(session_id),
            PackingAllocation.product_id == int(product_id),
        )
    )
    return int(res.scalar_one() or 0)
