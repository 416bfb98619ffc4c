# fulfillment_engine/services/line_items.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from fulfillment_engine.models.enums import LineItemSource
from fulfillment_engine.models.order import Order
from fulfillment_engine.services.errors import ValidationError


@dataclass(frozen=True)
class LineItem:
    """
    统一的行项目视图（与来源无关）。

    product_id 为 None：外部商品未映射到本地商品，不能进入履约批次。
    """

    product_id: Optional[int]
    quantity: int
    sku: Optional[str] = None
    name: Optional[str] = None


class LineItemProvider(Protocol):
    source: str

    def items_for(self, order: Order) -> List[LineItem]: ...


class NormalizedLineItemProvider:
    """order_line_items 表（Order.items 关系，selectin 预加载）。"""

    source = LineItemSource.NORMALIZED.value

    def items_for(self, order: Order) -> List[LineItem]:
        return [
            LineItem(
                product_id=row.product_id,
                quantity=int(row.quantity),
                sku=row.sku,
                name=row.name,
            )
            for row in order.items or []
        ]


class EmbeddedLineItemProvider:
    """orders.line_items JSON 列表。"""

    source = LineItemSource.EMBEDDED.value

    def items_for(self, order: Order) -> List[LineItem]:
        out: List[LineItem] = []
        for raw in order.line_items or []:
            pid = raw.get("product_id")
            out.append(
                LineItem(
                    product_id=int(pid) if pid is not None else None,
                    quantity=int(raw.get("quantity") or 0),
                    sku=raw.get("sku"),
                    name=raw.get("name"),
                )
            )
        return out


_PROVIDERS: Dict[str, LineItemProvider] = {
    LineItemSource.NORMALIZED.value: NormalizedLineItemProvider(),
    LineItemSource.EMBEDDED.value: EmbeddedLineItemProvider(),
}


def provider_for(order: Order) -> LineItemProvider:
    try:
        return _PROVIDERS[order.line_item_source or LineItemSource.NORMALIZED.value]
    except KeyError:
        raise ValidationError(
            f"订单 {order.id} 的行项目来源未知：{order.line_item_source!r}",
            error_code="unknown_line_item_source",
            context={"order_id": order.id},
        ) from None


def line_items_for(order: Order) -> List[LineItem]:
    return provider_for(order).items_for(order)


def quantities_by_product(order: Order) -> Dict[int, int]:
    """按商品合并同一订单内的重复行；忽略未映射 / 非正数量的行。"""
    out: Dict[int, int] = {}
    for li in line_items_for(order):
        if li.product_id is None or li.quantity <= 0:
            continue
        out[li.product_id] = out.get(li.product_id, 0) + li.quantity
    return out


def unmapped_items(order: Order) -> List[Dict[str, Any]]:
    return [
        {"sku": li.sku, "name": li.name, "quantity": li.quantity}
        for li in line_items_for(order)
        if li.product_id is None
    ]
