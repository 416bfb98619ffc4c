# fulfillment_engine/services/session_types.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass
class AggregatedDemand:
    """
    批次需求汇总：

    - by_product : product_id → 全批次需求合计
    - by_order   : order_id → {product_id → 该订单需求}（同单重复商品已合并）
    """

    by_product: Dict[int, int]
    by_order: Dict[int, Dict[int, int]]


@dataclass
class PickListLine:
    product_id: int
    name: Optional[str]
    sku: Optional[str]
    total_quantity_needed: int
    quantity_picked: int
    current_stock: int
    is_complete: bool


@dataclass
class PackingItemView:
    product_id: int
    name: Optional[str]
    sku: Optional[str]
    quantity_needed: int
    quantity_packed: int
    is_complete: bool


@dataclass
class PackingOrderView:
    order_id: int
    order_number: str
    status: str
    items: List[PackingItemView]
    is_complete: bool


@dataclass
class SharedPoolLine:
    """共享池：remaining = picked - 已分配合计。"""

    product_id: int
    name: Optional[str]
    sku: Optional[str]
    quantity_picked: int
    quantity_packed: int
    remaining: int


@dataclass
class PackingView:
    session_id: int
    code: str
    status: str
    orders: List[PackingOrderView]
    shared_pool: List[SharedPoolLine]


@dataclass
class SessionSummary:
    session_id: int
    code: str
    outcome: str
    orders_total: int
    orders_restored: int
    abandoned_at: Optional[datetime] = None
    reason: Optional[str] = None


@dataclass
class RemoveOrderResult:
    session_id: int
    order_id: int
    removed: bool
    session_auto_abandoned: bool
    order_status: str
    remaining_orders: int


@dataclass
class StaleSession:
    session_id: int
    store_id: int
    code: str
    status: str
    last_activity_at: Optional[datetime]
    hours_inactive: float
    level: str
    order_count: int


@dataclass
class ActiveSessionView:
    session_id: int
    code: str
    status: str
    created_at: Optional[datetime]
    last_activity_at: Optional[datetime]
    order_count: int
    total_needed: int
    total_picked: int
    total_packed: int


@dataclass
class CleanupResult:
    inactive_hours: int
    abandoned: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.abandoned)
