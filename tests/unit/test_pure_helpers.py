from datetime import datetime, timezone

from fulfillment_engine.models.fulfillment_session import FulfillmentSession
from fulfillment_engine.models.order import Order
from fulfillment_engine.services.aggregation import aggregate_demand, validate_batchable
from fulfillment_engine.services.errors import (
    ConflictError,
    StockInsufficientError,
    ValidationError,
    shortage_detail,
)
from fulfillment_engine.services.session_codes import format_session_code, parse_session_seq
from fulfillment_engine.services.session_stale import hours_inactive, staleness_level

import pytest


def _order(oid, lines, status="confirmed"):
    return Order(
        id=oid,
        store_id=1,
        order_number=f"N{oid}",
        status=status,
        line_item_source="embedded",
        line_items=[{"product_id": pid, "quantity": q} for pid, q in lines],
    )


def test_session_code_format_and_parse():
    code = format_session_code(datetime(2026, 3, 7), 12)
    assert code == "PREP-07032026-012"
    assert parse_session_seq(code) == 12
    assert parse_session_seq("PREP-07032026-abc") is None
    assert parse_session_seq("BATCH-1") is None


@pytest.mark.parametrize(
    "hours, level",
    [(0, "OK"), (24, "OK"), (24.5, "WARNING"), (48, "WARNING"), (48.1, "CRITICAL")],
)
def test_staleness_level_thresholds(hours, level):
    assert staleness_level(hours, warning_hours=24, critical_hours=48) == level


def test_hours_inactive_accepts_naive_timestamps():
    now = datetime(2026, 1, 2, 12, 0, tzinfo=timezone.utc)
    fs = FulfillmentSession(last_activity_at=datetime(2026, 1, 2, 6, 0))
    assert hours_inactive(fs, now) == pytest.approx(6.0)


def test_aggregate_demand_sums_across_orders():
    demand = aggregate_demand([_order(1, [(10, 2), (11, 1)]), _order(2, [(10, 3)])])
    assert demand.by_product == {10: 5, 11: 1}
    assert demand.by_order == {1: {10: 2, 11: 1}, 2: {10: 3}}


def test_validate_batchable_reports_empty_orders():
    empty = _order(3, [])
    with pytest.raises(ValidationError) as ei:
        validate_batchable([3], {3: empty}, open_sessions={})
    assert ei.value.details[0]["reason"] == "no_line_items"


def test_error_to_problem_kwargs():
    err = StockInsufficientError(
        "库存不足",
        details=[shortage_detail(product_id=1, name="A", sku="S", needed=5, available=2)],
    )
    kw = err.to_problem_kwargs()
    assert kw["status_code"] == 409
    assert kw["error_code"] == "stock_insufficient"
    assert kw["details"][0]["short"] == 3
    assert kw["context"] is None

    assert ConflictError("x").error_code == "allocation_conflict"
    assert ValidationError("x", error_code="custom").to_problem_kwargs()["status_code"] == 422


def test_scheduler_stays_off_unless_enabled():
    from fulfillment_engine.core.scheduler import init_scheduler, shutdown_scheduler

    assert init_scheduler() is None
    shutdown_scheduler()
