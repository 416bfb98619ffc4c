# fulfillment_engine/services/aggregation.py
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.models.enums import OrderStatus
from fulfillment_engine.models.order import Order
from fulfillment_engine.models.product import Product
from fulfillment_engine.services.errors import (
    StockInsufficientError,
    ValidationError,
    order_state_detail,
    shortage_detail,
)
from fulfillment_engine.services.line_items import quantities_by_product, unmapped_items
from fulfillment_engine.services.product_store import load_products
from fulfillment_engine.services.session_types import AggregatedDemand


def aggregate_demand(orders: Sequence[Order]) -> AggregatedDemand:
    """跨订单按商品求和（行项目来源由 provider 屏蔽）。"""
    by_product: Dict[int, int] = {}
    by_order: Dict[int, Dict[int, int]] = {}
    for order in orders:
        per = quantities_by_product(order)
        by_order[order.id] = per
        for pid, qty in per.items():
            by_product[pid] = by_product.get(pid, 0) + qty
    return AggregatedDemand(by_product=by_product, by_order=by_order)


def validate_batchable(
    requested_ids: Sequence[int],
    orders: Mapping[int, Order],
    *,
    open_sessions: Mapping[int, int],
) -> None:
    """
    批次准入：订单存在（同店铺）、状态为 confirmed、不在其它未完成会话、
    行项目全部已映射且非空。任何一单不合格则整体拒绝，逐单列出原因。
    """
    details: List[Dict[str, Any]] = []
    for oid in requested_ids:
        order = orders.get(oid)
        if order is None:
            details.append({"type": "validation", "order_id": oid, "reason": "not_found"})
            continue
        if order.status != OrderStatus.CONFIRMED.value:
            d = order_state_detail(order_id=order.id, order_number=order.order_number, status=order.status)
            d["reason"] = "not_confirmed"
            details.append(d)
            continue
        if oid in open_sessions:
            details.append(
                {
                    "type": "state",
                    "order_id": oid,
                    "order_number": order.order_number,
                    "reason": "in_open_session",
                    "session_id": open_sessions[oid],
                }
            )
            continue
        unmapped = unmapped_items(order)
        if unmapped:
            details.append(
                {
                    "type": "validation",
                    "order_id": oid,
                    "order_number": order.order_number,
                    "reason": "unmapped_line_item",
                    "items": unmapped,
                }
            )
            continue
        if not quantities_by_product(order):
            details.append(
                {
                    "type": "validation",
                    "order_id": oid,
                    "order_number": order.order_number,
                    "reason": "no_line_items",
                }
            )

    if details:
        raise ValidationError(
            "部分订单不能进入履约批次",
            error_code="orders_not_batchable",
            details=details,
        )


async def check_stock(
    session: AsyncSession,
    needs: Mapping[int, int],
    *,
    for_update: bool = True,
) -> Dict[int, Product]:
    """
    需求 vs 当前库存；任一商品不足则整体拒绝，逐商品给出 {name, sku, needed, available}。
    for_update=True 时按 id 升序锁商品行，保证“校验 → 写入”之间库存不被并发改动。
    """
    products = await load_products(session, needs.keys(), for_update=for_update)

    missing = sorted(pid for pid in needs if pid not in products)
    if missing:
        raise ValidationError(
            "行项目引用了不存在的商品",
            error_code="product_not_found",
            details=[{"type": "validation", "product_id": pid, "reason": "not_found"} for pid in missing],
        )

    shortages = [
        shortage_detail(
            product_id=pid,
            name=products[pid].name,
            sku=products[pid].sku,
            needed=needs[pid],
            available=int(products[pid].stock),
        )
        for pid in sorted(needs)
        if int(products[pid].stock) < int(needs[pid])
    ]
    if shortages:
        raise StockInsufficientError(
            "库存不足，无法继续",
            details=shortages,
            next_actions=[
                {"action": "receive_stock", "label": "补货入库"},
                {"action": "adjust_stock", "label": "库存校正"},
                {"action": "drop_orders", "label": "从批次中剔除订单"},
            ],
        )
    return products
