# fulfillment_engine/models/enums.py
from __future__ import annotations

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PREPARATION = "in_preparation"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    RETURNED = "returned"


class SessionStatus(str, Enum):
    PICKING = "picking"
    PACKING = "packing"
    COMPLETED = "completed"


class MovementKind(str, Enum):
    READY = "ready"
    CANCELLED = "cancelled"
    REVERTED = "reverted"
    MANUAL = "manual"


class LineItemSource(str, Enum):
    NORMALIZED = "normalized"
    EMBEDDED = "embedded"


# 库存已出（台账已扣减）的状态：行项目冻结、订单不可删除
STOCK_COMMITTED_STATUSES = frozenset(
    {
        OrderStatus.READY_TO_SHIP.value,
        OrderStatus.SHIPPED.value,
        OrderStatus.IN_TRANSIT.value,
        OrderStatus.DELIVERED.value,
    }
)

# 进入这些状态时触发扣减
DECREMENT_STATUSES = frozenset(
    {
        OrderStatus.READY_TO_SHIP.value,
        OrderStatus.SHIPPED.value,
        OrderStatus.IN_TRANSIT.value,
    }
)

# 绕过仓库流程直接发出：订单从未结束的批次中摘除
DISPATCHED_STATUSES = frozenset(
    {
        OrderStatus.SHIPPED.value,
        OrderStatus.IN_TRANSIT.value,
        OrderStatus.DELIVERED.value,
    }
)

CANCEL_STATUSES = frozenset({OrderStatus.CANCELLED.value, OrderStatus.REJECTED.value})

EARLY_STATUSES = frozenset(
    {
        OrderStatus.PENDING.value,
        OrderStatus.CONFIRMED.value,
        OrderStatus.IN_PREPARATION.value,
    }
)

# 被其它流程撤回的订单
WITHDRAWN_STATUSES = frozenset(
    {
        OrderStatus.CANCELLED.value,
        OrderStatus.REJECTED.value,
        OrderStatus.RETURNED.value,
    }
)

ALL_ORDER_STATUSES = frozenset(s.value for s in OrderStatus)
