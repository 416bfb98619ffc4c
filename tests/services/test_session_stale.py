"""
滞留会话检测与过期清理。
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fulfillment_engine.models.fulfillment_session import FulfillmentSession
from fulfillment_engine.models.order import Order
from fulfillment_engine.services.errors import ValidationError
from fulfillment_engine.services.fulfillment_session_service import FulfillmentSessionService
from fulfillment_engine.services.session_stale import cleanup_expired_sessions, list_stale_sessions
from tests.factories import STORE_ID, make_order, make_product, reload

UTC = timezone.utc


async def _session_idle_for(session, svc, product, hours: float) -> FulfillmentSession:
    o = await make_order(session, [(product, 1)])
    fs = await svc.create_session(order_ids=[o.id])
    fs.last_activity_at = datetime.now(UTC) - timedelta(hours=hours)
    await session.flush()
    return fs


@pytest.mark.asyncio
async def test_stale_sessions_are_levelled_and_sorted(session):
    p = await make_product(session, stock=10)
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fresh = await _session_idle_for(session, svc, p, 1)
    warn = await _session_idle_for(session, svc, p, 30)
    crit = await _session_idle_for(session, svc, p, 50)

    stale = await list_stale_sessions(session, store_id=STORE_ID, warning_hours=24, critical_hours=48)
    assert [s.session_id for s in stale] == [crit.id, warn.id]
    assert [s.level for s in stale] == ["CRITICAL", "WARNING"]
    assert stale[0].order_count == 1
    assert 49.9 < stale[0].hours_inactive < 50.1
    assert fresh.id not in {s.session_id for s in stale}

    assert await list_stale_sessions(session, store_id=2) == []


@pytest.mark.asyncio
async def test_activity_resets_staleness(session):
    p = await make_product(session, stock=10)
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await _session_idle_for(session, svc, p, 30)

    await svc.report_picked(session_id=fs.id, product_id=p.id, quantity=1)
    assert await list_stale_sessions(session, warning_hours=24, critical_hours=48) == []


@pytest.mark.asyncio
async def test_cleanup_abandons_only_expired_sessions(session):
    p = await make_product(session, stock=10)
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    old = await _session_idle_for(session, svc, p, 50)
    recent = await _session_idle_for(session, svc, p, 2)

    result = await cleanup_expired_sessions(session, inactive_hours=48, actor_id="scheduler")
    assert result.abandoned == [old.code]
    assert result.count == 1

    old = await reload(session, FulfillmentSession, old.id)
    assert old.outcome == "abandoned"
    assert old.abandon_reason == "Auto-abandoned: inactive for more than 48 hours"
    assert old.abandoned_by == "scheduler"
    assert (await reload(session, FulfillmentSession, recent.id)).is_open

    order_ids = [d.id for d in (await svc.get_session(session_id=old.id))["orders"]]
    for oid in order_ids:
        assert (await reload(session, Order, oid)).status == "confirmed"

    # 再跑一次什么也不做
    again = await cleanup_expired_sessions(session, inactive_hours=48)
    assert again.abandoned == []


@pytest.mark.asyncio
async def test_cleanup_rejects_negative_threshold(session):
    with pytest.raises(ValidationError):
        await cleanup_expired_sessions(session, inactive_hours=-1)


@pytest.mark.asyncio
async def test_zero_threshold_is_rejected_not_defaulted(session):
    p = await make_product(session, stock=10)
    svc = FulfillmentSessionService(session, store_id=STORE_ID)
    fs = await _session_idle_for(session, svc, p, 100)

    with pytest.raises(ValidationError) as ei:
        await cleanup_expired_sessions(session, inactive_hours=0)
    assert ei.value.error_code == "invalid_threshold"

    for warn, crit in ((0, 48), (24, 0), (48, 24)):
        with pytest.raises(ValidationError) as ei:
            await list_stale_sessions(session, warning_hours=warn, critical_hours=crit)
        assert ei.value.error_code == "invalid_threshold"

    assert (await reload(session, FulfillmentSession, fs.id)).abandoned_at is None
