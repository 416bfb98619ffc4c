"""
会话各阶段的前置校验：准入、拣货上报、阶段推进、打包分配、完成 / 放弃的幂等。
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from fulfillment_engine.models.fulfillment_session import FulfillmentSession
from fulfillment_engine.models.order import Order
from fulfillment_engine.models.pick_item import AggregatedPickItem
from fulfillment_engine.models.product import Product
from fulfillment_engine.services.errors import (
    ConflictError,
    IncompleteError,
    NotFoundError,
    StateError,
    StockInsufficientError,
    ValidationError,
)
from fulfillment_engine.services.fulfillment_session_service import FulfillmentSessionService
from fulfillment_engine.services.order_source import OrderSource
from fulfillment_engine.services.stock_ledger import adjust_stock
from tests.factories import (
    STORE_ID,
    make_order,
    make_product,
    movements_for,
    pack_all,
    pick_all,
    reload,
    run_to_packing,
)


async def _session_count(session) -> int:
    return int((await session.execute(select(func.count(FulfillmentSession.id)))).scalar_one())


# ---------------------------------------------------------------------------
# 建批次
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_rejects_empty_and_missing_store(session):
    with pytest.raises(ValidationError) as ei:
        await FulfillmentSessionService(session, store_id=STORE_ID).create_session(order_ids=[])
    assert ei.value.error_code == "empty_batch"

    with pytest.raises(ValidationError) as ei:
        await FulfillmentSessionService(session).create_session(order_ids=[1])
    assert ei.value.error_code == "store_required"


@pytest.mark.asyncio
async def test_create_lists_every_unbatchable_order(session):
    p = await make_product(session, stock=10)
    ok = await make_order(session, [(p, 1)])
    pending = await make_order(session, [(p, 1)], status="pending")
    other_store = await make_order(session, [(p, 1)], store_id=2)
    unmapped = await _make_unmapped_order(session)
    svc = FulfillmentSessionService(session, store_id=STORE_ID)

    with pytest.raises(ValidationError) as ei:
        await svc.create_session(order_ids=[ok.id, pending.id, other_store.id, unmapped.id, 9999])
    assert ei.value.error_code == "orders_not_batchable"
    reasons = {d["order_id"]: d["reason"] for d in ei.value.details}
    assert reasons == {
        pending.id: "not_confirmed",
        other_store.id: "not_found",
        unmapped.id: "unmapped_line_item",
        9999: "not_found",
    }

    # 整体拒绝：没有写入任何会话，合格订单状态不变
    assert await _session_count(session) == 0
    assert (await reload(session, Order, ok.id)).status == "confirmed"


async def _make_unmapped_order(session) -> Order:
    return await OrderSource(session).create_order(
        store_id=STORE_ID,
        order_number="ORD-UNMAPPED",
        items=[{"product_id": None, "sku": "EXT-1", "name": "Marketplace item", "quantity": 1}],
    )


@pytest.mark.asyncio
async def test_order_cannot_join_two_open_sessions(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 1)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await svc.create_session(order_ids=[o1.id])

    # 订单已是 in_preparation，再次组批按状态拒绝
    with pytest.raises(ValidationError) as ei:
        await svc.create_session(order_ids=[o1.id])
    assert ei.value.details[0]["reason"] == "not_confirmed"

    # 外部流程把订单改回 confirmed，但它仍挂在未完成的会话上
    await OrderSource(session).change_order_status(o1.id, "confirmed")
    with pytest.raises(ValidationError) as ei:
        await svc.create_session(order_ids=[o1.id])
    assert ei.value.details[0]["reason"] == "in_open_session"
    assert ei.value.details[0]["session_id"] == fs.id


@pytest.mark.asyncio
async def test_create_rejects_on_stock_shortage_without_side_effects(session):
    p = await make_product(session, stock=2, name="Dog Treat")
    q = await make_product(session, stock=50)
    o1 = await make_order(session, [(p, 2), (q, 1)])
    o2 = await make_order(session, [(p, 1)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)

    with pytest.raises(StockInsufficientError) as ei:
        await svc.create_session(order_ids=[o1.id, o2.id])
    err = ei.value
    assert err.error_code == "stock_insufficient"
    assert err.details == [
        {
            "type": "shortage",
            "product_id": p.id,
            "name": "Dog Treat",
            "sku": p.sku,
            "needed": 3,
            "available": 2,
            "short": 1,
        }
    ]
    assert {a["action"] for a in err.next_actions} >= {"receive_stock", "adjust_stock"}

    assert await _session_count(session) == 0
    assert (await reload(session, Order, o1.id)).status == "confirmed"
    assert (await reload(session, Product, p.id)).stock == 2


@pytest.mark.asyncio
async def test_duplicate_order_ids_are_merged(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 2)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await svc.create_session(order_ids=[o1.id, o1.id])
    lines = await svc.get_picking_list(session_id=fs.id)
    assert [(ln.product_id, ln.total_quantity_needed) for ln in lines] == [(p.id, 2)]


# ---------------------------------------------------------------------------
# 拣货
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_report_picked_is_absolute_and_bounded(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 3)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await svc.create_session(order_ids=[o1.id])

    item = await svc.report_picked(session_id=fs.id, product_id=p.id, quantity=3)
    assert item.quantity_picked == 3
    item = await svc.report_picked(session_id=fs.id, product_id=p.id, quantity=1)
    assert item.quantity_picked == 1

    with pytest.raises(ValidationError) as ei:
        await svc.report_picked(session_id=fs.id, product_id=p.id, quantity=4)
    assert ei.value.error_code == "picked_out_of_range"
    with pytest.raises(ValidationError):
        await svc.report_picked(session_id=fs.id, product_id=p.id, quantity=-1)

    other = await make_product(session, stock=10)
    with pytest.raises(NotFoundError) as ei:
        await svc.report_picked(session_id=fs.id, product_id=other.id, quantity=1)
    assert ei.value.error_code == "product_not_in_session"


@pytest.mark.asyncio
async def test_report_picked_cannot_exceed_current_stock(session):
    p = await make_product(session, stock=5)
    o1 = await make_order(session, [(p, 4)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await svc.create_session(order_ids=[o1.id])

    await adjust_stock(session, product_id=p.id, delta=-2, reason="damaged")
    with pytest.raises(StockInsufficientError) as ei:
        await svc.report_picked(session_id=fs.id, product_id=p.id, quantity=4)
    assert ei.value.details[0]["available"] == 3


@pytest.mark.asyncio
async def test_finish_picking_requires_every_line_complete(session):
    p = await make_product(session, stock=10)
    q = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 2), (q, 1)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await svc.create_session(order_ids=[o1.id])
    await svc.report_picked(session_id=fs.id, product_id=p.id, quantity=2)

    with pytest.raises(IncompleteError) as ei:
        await svc.finish_picking(session_id=fs.id)
    assert ei.value.error_code == "picking_incomplete"
    assert ei.value.details == [
        {"type": "diff", "product_id": q.id, "sku": q.sku, "picked": 0, "needed": 1}
    ]
    assert (await reload(session, FulfillmentSession, fs.id)).status == "picking"


@pytest.mark.asyncio
async def test_finish_picking_rechecks_stock(session):
    p = await make_product(session, stock=5)
    o1 = await make_order(session, [(p, 4)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await svc.create_session(order_ids=[o1.id])
    await pick_all(svc, fs.id)

    await adjust_stock(session, product_id=p.id, delta=-3, reason="recount")
    with pytest.raises(StockInsufficientError):
        await svc.finish_picking(session_id=fs.id)


@pytest.mark.asyncio
async def test_picking_endpoints_reject_wrong_phase(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 1)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await svc.create_session(order_ids=[o1.id])

    with pytest.raises(StateError) as ei:
        await svc.pack_unit(session_id=fs.id, order_id=o1.id, product_id=p.id)
    assert ei.value.error_code == "session_not_packing"
    with pytest.raises(StateError) as ei:
        await svc.complete_session(session_id=fs.id)
    assert ei.value.error_code == "session_not_packing"

    await pick_all(svc, fs.id)
    await svc.finish_picking(session_id=fs.id)
    with pytest.raises(StateError) as ei:
        await svc.report_picked(session_id=fs.id, product_id=p.id, quantity=1)
    assert ei.value.error_code == "session_not_picking"
    with pytest.raises(StateError):
        await svc.finish_picking(session_id=fs.id)


# ---------------------------------------------------------------------------
# 打包
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pack_unit_guards(session):
    p = await make_product(session, stock=10)
    q = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 1)])
    o2 = await make_order(session, [(q, 1)])
    outsider = await make_order(session, [(p, 1)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await run_to_packing(svc, [o1.id, o2.id])

    with pytest.raises(ValidationError) as ei:
        await svc.pack_unit(session_id=fs.id, order_id=outsider.id, product_id=p.id)
    assert ei.value.error_code == "order_not_in_session"

    with pytest.raises(NotFoundError) as ei:
        await svc.pack_unit(session_id=fs.id, order_id=o1.id, product_id=q.id)
    assert ei.value.error_code == "product_not_in_order"

    alloc = await svc.pack_unit(session_id=fs.id, order_id=o1.id, product_id=p.id)
    assert (alloc.quantity_packed, alloc.quantity_needed) == (1, 1)
    with pytest.raises(ConflictError) as ei:
        await svc.pack_unit(session_id=fs.id, order_id=o1.id, product_id=p.id)
    assert ei.value.error_code == "allocation_full"


@pytest.mark.asyncio
async def test_pack_unit_never_exceeds_picked_pool(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 1)])
    o2 = await make_order(session, [(p, 1)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await run_to_packing(svc, [o1.id, o2.id])

    # 模拟拣货数据被下调（例如人工更正），共享池只剩 1 件
    pick = (
        await session.execute(
            select(AggregatedPickItem).where(AggregatedPickItem.session_id == fs.id)
        )
    ).scalar_one()
    pick.quantity_picked = 1
    await session.flush()

    await svc.pack_unit(session_id=fs.id, order_id=o1.id, product_id=p.id)
    with pytest.raises(ConflictError) as ei:
        await svc.pack_unit(session_id=fs.id, order_id=o2.id, product_id=p.id)
    assert ei.value.error_code == "pool_exhausted"
    assert ei.value.details[0]["picked"] == 1


@pytest.mark.asyncio
async def test_packing_view_tracks_progress(session):
    p = await make_product(session, stock=10, sku="SKU-P")
    o1 = await make_order(session, [(p, 2)])
    o2 = await make_order(session, [(p, 1)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await run_to_packing(svc, [o1.id, o2.id])
    await svc.pack_unit(session_id=fs.id, order_id=o1.id, product_id=p.id)

    view = await svc.get_packing_view(session_id=fs.id)
    assert view.status == "packing"
    assert [o.order_id for o in view.orders] == sorted([o1.id, o2.id])
    by_order = {o.order_id: o for o in view.orders}
    assert by_order[o1.id].items[0].quantity_packed == 1
    assert by_order[o1.id].is_complete is False
    assert view.shared_pool[0].sku == "SKU-P"
    assert (view.shared_pool[0].quantity_picked, view.shared_pool[0].remaining) == (3, 2)


# ---------------------------------------------------------------------------
# 完成 / 放弃
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_complete_requires_full_packing(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 2)], number="ORD-A")
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await run_to_packing(svc, [o1.id])
    await svc.pack_unit(session_id=fs.id, order_id=o1.id, product_id=p.id)

    with pytest.raises(IncompleteError) as ei:
        await svc.complete_session(session_id=fs.id)
    assert ei.value.error_code == "packing_incomplete"
    d = ei.value.details[0]
    assert (d["order_number"], d["product_id"], d["packed"], d["needed"]) == ("ORD-A", p.id, 1, 2)

    assert (await reload(session, Product, p.id)).stock == 10
    assert (await reload(session, Order, o1.id)).status == "in_preparation"


@pytest.mark.asyncio
async def test_complete_reports_withdrawn_order_before_unpacked_lines(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 2)])
    o2 = await make_order(session, [(p, 1)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await run_to_packing(svc, [o1.id, o2.id])

    # o1 一件未装就被取消；o2 装满
    await OrderSource(session).change_order_status(o1.id, "cancelled")
    await svc.pack_unit(session_id=fs.id, order_id=o2.id, product_id=p.id)

    with pytest.raises(StateError) as ei:
        await svc.complete_session(session_id=fs.id)
    assert ei.value.error_code == "orders_withdrawn"
    assert [d["order_id"] for d in ei.value.details] == [o1.id]
    assert ei.value.next_actions[0]["action"] == "remove_order"

    await svc.remove_order_from_session(session_id=fs.id, order_id=o1.id)
    fs = await svc.complete_session(session_id=fs.id)
    assert fs.status == "completed"
    assert (await reload(session, Product, p.id)).stock == 9


@pytest.mark.asyncio
async def test_complete_twice_never_double_decrements(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 3)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await run_to_packing(svc, [o1.id])
    await pack_all(svc, fs.id)
    await svc.complete_session(session_id=fs.id)

    with pytest.raises(StateError) as ei:
        await svc.complete_session(session_id=fs.id)
    assert ei.value.error_code == "session_already_completed"

    assert (await reload(session, Product, p.id)).stock == 7
    assert len(await movements_for(session, order_id=o1.id, kind="ready")) == 1

    with pytest.raises(StateError) as ei:
        await svc.abandon_session(session_id=fs.id)
    assert ei.value.error_code == "session_already_completed"


@pytest.mark.asyncio
async def test_abandon_restores_orders_and_is_terminal(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 2)])
    o2 = await make_order(session, [(p, 1)])
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await run_to_packing(svc, [o1.id, o2.id])
    await svc.pack_unit(session_id=fs.id, order_id=o1.id, product_id=p.id)

    summary = await svc.abandon_session(session_id=fs.id, reason="shift ended", actor_id="lead")
    assert summary.outcome == "abandoned"
    assert summary.orders_total == 2
    assert summary.orders_restored == 2
    assert summary.reason == "shift ended"

    for oid in (o1.id, o2.id):
        assert (await reload(session, Order, oid)).status == "confirmed"
    assert (await reload(session, Product, p.id)).stock == 10
    assert await movements_for(session, product_id=p.id) == []

    with pytest.raises(StateError) as ei:
        await svc.abandon_session(session_id=fs.id)
    assert ei.value.error_code == "session_already_abandoned"
    with pytest.raises(StateError):
        await svc.pack_unit(session_id=fs.id, order_id=o1.id, product_id=p.id)


@pytest.mark.asyncio
async def test_other_store_cannot_see_session(session):
    p = await make_product(session, stock=10)
    o1 = await make_order(session, [(p, 1)])
    fs = await FulfillmentSessionService(session, store_id=STORE_ID).create_session(order_ids=[o1.id])

    foreign = FulfillmentSessionService(session, store_id=2)
    with pytest.raises(NotFoundError):
        await foreign.get_session(session_id=fs.id)
    with pytest.raises(NotFoundError):
        await foreign.abandon_session(session_id=fs.id)
    assert await foreign.get_active_sessions() == []


@pytest.mark.asyncio
async def test_session_codes_increment_per_store_and_day(session):
    p = await make_product(session, stock=10)
    p2 = await make_product(session, stock=10, store_id=2)
    o1 = await make_order(session, [(p, 1)])
    o2 = await make_order(session, [(p, 1)])
    o3 = await make_order(session, [(p2, 1)], store_id=2)

    a = await FulfillmentSessionService(session, store_id=STORE_ID).create_session(order_ids=[o1.id])
    b = await FulfillmentSessionService(session, store_id=STORE_ID).create_session(order_ids=[o2.id])
    c = await FulfillmentSessionService(session, store_id=2).create_session(order_ids=[o3.id])

    assert a.code.endswith("-001")
    assert b.code.endswith("-002")
    assert c.code.endswith("-001")
    assert a.code[:-4] == b.code[:-4]
