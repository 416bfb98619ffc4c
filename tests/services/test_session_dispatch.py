"""
订单绕过仓库流程直接发出（shipped / in_transit / delivered）时，自动从未结束的批次中摘除。
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from fulfillment_engine.models.fulfillment_session import FulfillmentSession
from fulfillment_engine.models.packing_allocation import PackingAllocation
from fulfillment_engine.models.product import Product
from fulfillment_engine.services.fulfillment_session_service import FulfillmentSessionService
from fulfillment_engine.services.order_source import OrderSource
from fulfillment_engine.services.session_dispatch import is_outside_dispatch
from fulfillment_engine.services.session_loaders import load_pick_items, session_order_ids
from tests.factories import STORE_ID, make_order, make_product, movements_for, reload, run_to_packing


@pytest.mark.parametrize(
    "old,new,expected",
    [
        ("in_preparation", "shipped", True),
        ("confirmed", "delivered", True),
        ("pending", "in_transit", True),
        ("in_preparation", "ready_to_ship", False),
        ("ready_to_ship", "shipped", False),
        ("in_preparation", "cancelled", False),
    ],
)
def test_is_outside_dispatch(old, new, expected):
    assert is_outside_dispatch(old, new) is expected


@pytest.mark.asyncio
async def test_shipped_order_leaves_packing_session(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 2)])
    o2 = await make_order(session, [(p, 1)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await run_to_packing(svc, [o1.id, o2.id])
    await svc.pack_unit(session_id=fs.id, order_id=o1.id, product_id=p.id)

    await OrderSource(session).change_order_status(o1.id, "shipped", actor_id="cs-agent")

    assert await session_order_ids(session, fs.id) == [o2.id]
    allocs = (
        (await session.execute(select(PackingAllocation).where(PackingAllocation.session_id == fs.id)))
        .scalars()
        .all()
    )
    assert [a.order_id for a in allocs] == [o2.id]

    picks = await load_pick_items(session, fs.id)
    assert (picks[p.id].total_quantity_needed, picks[p.id].quantity_picked) == (1, 1)

    fs = await reload(session, FulfillmentSession, fs.id)
    assert fs.status == "packing"
    assert (await reload(session, Product, p.id)).stock == 8
    ready = await movements_for(session, order_id=o1.id, kind="ready")
    assert [m.quantity_change for m in ready] == [-2]

    # 剩下的订单照常完成
    await svc.pack_unit(session_id=fs.id, order_id=o2.id, product_id=p.id)
    fs = await svc.complete_session(session_id=fs.id)
    assert fs.outcome == "completed"
    assert (await reload(session, Product, p.id)).stock == 7


@pytest.mark.asyncio
async def test_delivering_last_order_abandons_session(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 2)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await svc.create_session(order_ids=[o1.id])

    await OrderSource(session).change_order_status(o1.id, "delivered")

    fs = await reload(session, FulfillmentSession, fs.id)
    assert fs.status == "completed"
    assert fs.outcome == "abandoned"
    assert fs.abandon_reason == f"Order {o1.id} processed outside warehouse (status: delivered)"
    assert await session_order_ids(session, fs.id) == []
    assert await load_pick_items(session, fs.id) == {}


@pytest.mark.asyncio
async def test_cancelled_order_stays_in_session(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 2)])
    o2 = await make_order(session, [(p, 1)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await run_to_packing(svc, [o1.id, o2.id])

    await OrderSource(session).change_order_status(o1.id, "cancelled")

    assert await session_order_ids(session, fs.id) == [o1.id, o2.id]
    picks = await load_pick_items(session, fs.id)
    assert picks[p.id].total_quantity_needed == 3
