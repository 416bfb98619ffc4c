"""
HTTP 层：完整流程 + 领域异常的 Problem 形状。
"""

from __future__ import annotations

import pytest
from httpx import AsyncClient

from tests.factories import STORE_ID, make_order, make_product


async def _seed(async_session_maker, lines_per_order, stock=10):
    async with async_session_maker() as s:
        p = await make_product(s, stock=stock)
        orders = [await make_order(s, [(p, qty)]) for qty in lines_per_order]
        await s.commit()
        return p.id, [o.id for o in orders]


@pytest.mark.asyncio
async def test_session_lifecycle_over_http(client: AsyncClient, async_session_maker):
    pid, (o1, o2) = await _seed(async_session_maker, [2, 1])

    r = await client.get("/fulfillment-sessions/confirmed-orders", params={"store_id": STORE_ID})
    assert r.status_code == 200
    assert {row["order_id"] for row in r.json()} == {o1, o2}

    r = await client.post(
        "/fulfillment-sessions",
        json={"store_id": STORE_ID, "order_ids": [o1, o2], "actor_id": "u1"},
    )
    assert r.status_code == 201, r.text
    sid = r.json()["id"]
    assert r.json()["status"] == "picking"

    r = await client.get(f"/fulfillment-sessions/{sid}/picking-list")
    assert [(ln["product_id"], ln["total_quantity_needed"]) for ln in r.json()] == [(pid, 3)]

    r = await client.post(f"/fulfillment-sessions/{sid}/picked", json={"product_id": pid, "quantity": 3})
    assert r.status_code == 200, r.text
    r = await client.post(f"/fulfillment-sessions/{sid}/finish-picking")
    assert r.json()["status"] == "packing"

    for oid, n in ((o1, 2), (o2, 1)):
        for _ in range(n):
            r = await client.post(f"/fulfillment-sessions/{sid}/pack", json={"order_id": oid, "product_id": pid})
            assert r.status_code == 200, r.text

    r = await client.get(f"/fulfillment-sessions/{sid}/packing")
    assert all(o["is_complete"] for o in r.json()["orders"])

    r = await client.post(f"/fulfillment-sessions/{sid}/complete", json={"actor_id": "u1"})
    assert r.status_code == 200, r.text
    assert r.json()["outcome"] == "completed"

    r = await client.get("/inventory/movements", params={"product_id": pid})
    assert sorted(m["quantity_change"] for m in r.json()) == [-2, -1]

    r = await client.get(f"/inventory/replay/{pid}")
    assert r.json()["consistent"] is True
    assert r.json()["current_stock"] == 7

    r = await client.get("/inventory/verify", params={"store_id": STORE_ID})
    assert r.json()["consistent"] is True


@pytest.mark.asyncio
async def test_shortage_returns_problem_with_details(client: AsyncClient, async_session_maker):
    pid, (o1,) = await _seed(async_session_maker, [5], stock=3)

    r = await client.post("/fulfillment-sessions", json={"store_id": STORE_ID, "order_ids": [o1]})
    assert r.status_code == 409
    body = r.json()
    assert body["error_code"] == "stock_insufficient"
    assert body["http_status"] == 409
    assert body["trace_id"].startswith("t_")
    assert body["context"]["path"] == "/fulfillment-sessions"
    assert body["details"][0]["product_id"] == pid
    assert (body["details"][0]["needed"], body["details"][0]["available"]) == (5, 3)
    assert any(a["action"] == "receive_stock" for a in body["next_actions"])


@pytest.mark.asyncio
async def test_unknown_session_and_bad_payload(client: AsyncClient, async_session_maker):
    r = await client.get("/fulfillment-sessions/424242")
    assert r.status_code == 404
    assert r.json()["error_code"] == "not_found"

    r = await client.post("/fulfillment-sessions", json={"store_id": STORE_ID, "order_ids": []})
    assert r.status_code == 422
    assert r.json()["error_code"] == "request_validation_error"


@pytest.mark.asyncio
async def test_abandon_and_remove_over_http(client: AsyncClient, async_session_maker):
    pid, (o1, o2) = await _seed(async_session_maker, [1, 1])
    r = await client.post("/fulfillment-sessions", json={"store_id": STORE_ID, "order_ids": [o1, o2]})
    sid = r.json()["id"]

    r = await client.delete(f"/fulfillment-sessions/{sid}/orders/{o1}", params={"actor_id": "lead"})
    assert r.status_code == 200, r.text
    assert r.json()["session_auto_abandoned"] is False
    assert r.json()["order_status"] == "confirmed"

    r = await client.post(f"/fulfillment-sessions/{sid}/abandon", json={"reason": "wrong wave"})
    assert r.status_code == 200, r.text
    assert r.json()["outcome"] == "abandoned"

    r = await client.post(f"/fulfillment-sessions/{sid}/abandon", json={})
    assert r.status_code == 409
    assert r.json()["error_code"] == "session_already_abandoned"

    r = await client.get("/fulfillment-sessions", params={"store_id": STORE_ID})
    assert r.json() == []


@pytest.mark.asyncio
async def test_order_status_and_manual_adjust_endpoints(client: AsyncClient, async_session_maker):
    pid, (o1,) = await _seed(async_session_maker, [2])

    r = await client.post(f"/orders/{o1}/status", json={"status": "shipped"})
    assert r.status_code == 200, r.text
    assert r.json()["stock_deducted"] is True

    r = await client.put(f"/orders/{o1}/line-items", json={"items": [{"product_id": pid, "quantity": 1}]})
    assert r.status_code == 409
    assert r.json()["error_code"] == "stock_already_decremented"

    r = await client.post("/inventory/adjust", json={"product_id": pid, "delta": -100})
    assert r.status_code == 422
    assert r.json()["error_code"] == "negative_stock"

    r = await client.post("/inventory/adjust", json={"product_id": pid, "delta": 4, "reason": "recount"})
    assert r.status_code == 200
    assert (r.json()["stock_before"], r.json()["stock_after"]) == (8, 12)


@pytest.mark.asyncio
async def test_healthz_and_metrics(client: AsyncClient):
    r = await client.get("/healthz")
    assert r.json() == {"status": "ok"}
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "fulfillment_sessions_created_total" in r.text
