# tests/factories.py
from __future__ import annotations

import uuid
from typing import Iterable, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.models.fulfillment_session import FulfillmentSession
from fulfillment_engine.models.inventory_movement import InventoryMovement
from fulfillment_engine.models.order import Order
from fulfillment_engine.models.product import Product
from fulfillment_engine.services.fulfillment_session_service import FulfillmentSessionService
from fulfillment_engine.services.order_source import OrderSource
from fulfillment_engine.services.product_store import create_product

STORE_ID = 1


async def make_product(
    session: AsyncSession,
    *,
    stock: int = 100,
    store_id: int = STORE_ID,
    name: str = "Cat Food A",
    sku: Optional[str] = None,
) -> Product:
    return await create_product(
        session,
        store_id=store_id,
        name=name,
        sku=sku or f"SKU-{uuid.uuid4().hex[:8]}",
        initial_stock=stock,
    )


async def make_order(
    session: AsyncSession,
    lines: Sequence[Tuple[Product, int]],
    *,
    store_id: int = STORE_ID,
    source: str = "normalized",
    status: str = "confirmed",
    number: Optional[str] = None,
) -> Order:
    items = [
        {"product_id": p.id, "quantity": qty, "sku": p.sku, "name": p.name} for p, qty in lines
    ]
    return await OrderSource(session).create_order(
        store_id=store_id,
        order_number=number or f"ORD-{uuid.uuid4().hex[:10]}",
        items=items,
        source=source,
        status=status,
    )


async def pick_all(svc: FulfillmentSessionService, session_id: int) -> None:
    for line in await svc.get_picking_list(session_id=session_id):
        await svc.report_picked(
            session_id=session_id,
            product_id=line.product_id,
            quantity=line.total_quantity_needed,
        )


async def pack_all(svc: FulfillmentSessionService, session_id: int) -> None:
    view = await svc.get_packing_view(session_id=session_id)
    for o in view.orders:
        for it in o.items:
            for _ in range(it.quantity_needed - it.quantity_packed):
                await svc.pack_unit(session_id=session_id, order_id=o.order_id, product_id=it.product_id)


async def run_to_packing(
    svc: FulfillmentSessionService, order_ids: Iterable[int], *, actor_id: str = "picker-1"
) -> FulfillmentSession:
    fs = await svc.create_session(order_ids=list(order_ids), actor_id=actor_id)
    await pick_all(svc, fs.id)
    return await svc.finish_picking(session_id=fs.id)


async def reload(session: AsyncSession, model, pk: int):
    """绕开身份映射缓存，读库里当前值。"""
    return await session.get(model, pk, populate_existing=True)


async def movements_for(
    session: AsyncSession,
    *,
    order_id: Optional[int] = None,
    product_id: Optional[int] = None,
    kind: Optional[str] = None,
) -> list[InventoryMovement]:
    stmt = select(InventoryMovement).order_by(InventoryMovement.id.asc())
    if order_id is not None:
        stmt = stmt.where(InventoryMovement.order_id == order_id)
    if product_id is not None:
        stmt = stmt.where(InventoryMovement.product_id == product_id)
    if kind is not None:
        stmt = stmt.where(InventoryMovement.kind == kind)
    return list((await session.execute(stmt)).scalars().all())
