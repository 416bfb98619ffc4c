# fulfillment_engine/api/routers/fulfillment_sessions_schemas.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class SessionCreateIn(BaseModel):
    store_id: int = Field(..., description="店铺 ID")
    order_ids: List[int] = Field(..., min_length=1, description="要组批的订单（必须为 confirmed）")
    actor_id: Optional[str] = Field(None, description="操作人")


class PickedIn(BaseModel):
    product_id: int
    quantity: int = Field(..., ge=0, description="已拣数量（绝对值，不是增量）")


class PackIn(BaseModel):
    order_id: int
    product_id: int


class CompleteIn(BaseModel):
    actor_id: Optional[str] = None


class AbandonIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    actor_id: Optional[str] = None


class CleanupIn(BaseModel):
    inactive_hours: Optional[int] = Field(None, ge=1, description="缺省取 CLEANUP_INACTIVE_HOURS")


class SessionOut(BaseModel):
    id: int
    store_id: int
    code: str
    status: str
    created_by: Optional[str]
    picking_started_at: Optional[datetime]
    picking_completed_at: Optional[datetime]
    packing_started_at: Optional[datetime]
    packing_completed_at: Optional[datetime]
    completed_at: Optional[datetime]
    last_activity_at: Optional[datetime]
    abandoned_at: Optional[datetime]
    abandoned_by: Optional[str]
    abandon_reason: Optional[str]
    outcome: str

    model_config = ConfigDict(from_attributes=True)


class SessionOrderOut(BaseModel):
    id: int
    order_number: str
    status: str
    line_item_source: str

    model_config = ConfigDict(from_attributes=True)


class PickListLineOut(BaseModel):
    product_id: int
    name: Optional[str]
    sku: Optional[str]
    total_quantity_needed: int
    quantity_picked: int
    current_stock: int
    is_complete: bool

    model_config = ConfigDict(from_attributes=True)


class SessionDetailOut(BaseModel):
    session: SessionOut
    orders: List[SessionOrderOut]
    picking_list: List[PickListLineOut]


class PickItemOut(BaseModel):
    id: int
    session_id: int
    product_id: int
    total_quantity_needed: int
    quantity_picked: int
    picked_at: Optional[datetime]

    @computed_field  # type: ignore[misc]
    @property
    def remain_qty(self) -> int:
        return int(self.total_quantity_needed) - int(self.quantity_picked)

    model_config = ConfigDict(from_attributes=True)


class AllocationOut(BaseModel):
    id: int
    session_id: int
    order_id: int
    product_id: int
    quantity_needed: int
    quantity_packed: int
    packed_at: Optional[datetime]

    @computed_field  # type: ignore[misc]
    @property
    def is_complete(self) -> bool:
        return int(self.quantity_packed) >= int(self.quantity_needed)

    model_config = ConfigDict(from_attributes=True)


class PackingItemOut(BaseModel):
    product_id: int
    name: Optional[str]
    sku: Optional[str]
    quantity_needed: int
    quantity_packed: int
    is_complete: bool

    model_config = ConfigDict(from_attributes=True)


class PackingOrderOut(BaseModel):
    order_id: int
    order_number: str
    status: str
    items: List[PackingItemOut]
    is_complete: bool

    model_config = ConfigDict(from_attributes=True)


class SharedPoolLineOut(BaseModel):
    product_id: int
    name: Optional[str]
    sku: Optional[str]
    quantity_picked: int
    quantity_packed: int
    remaining: int

    model_config = ConfigDict(from_attributes=True)


class PackingViewOut(BaseModel):
    session_id: int
    code: str
    status: str
    orders: List[PackingOrderOut]
    shared_pool: List[SharedPoolLineOut]

    model_config = ConfigDict(from_attributes=True)


class SessionSummaryOut(BaseModel):
    session_id: int
    code: str
    outcome: str
    orders_total: int
    orders_restored: int
    abandoned_at: Optional[datetime] = None
    reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RemoveOrderOut(BaseModel):
    session_id: int
    order_id: int
    removed: bool
    session_auto_abandoned: bool
    order_status: str
    remaining_orders: int

    model_config = ConfigDict(from_attributes=True)


class StaleSessionOut(BaseModel):
    session_id: int
    store_id: int
    code: str
    status: str
    last_activity_at: Optional[datetime]
    hours_inactive: float
    level: str
    order_count: int

    model_config = ConfigDict(from_attributes=True)


class ActiveSessionOut(BaseModel):
    session_id: int
    code: str
    status: str
    created_at: Optional[datetime]
    last_activity_at: Optional[datetime]
    order_count: int
    total_needed: int
    total_picked: int
    total_packed: int

    model_config = ConfigDict(from_attributes=True)


class CleanupOut(BaseModel):
    inactive_hours: int
    abandoned: List[str]
    count: int


class ConfirmedOrderOut(BaseModel):
    order_id: int
    order_number: str
    status: str
    line_item_source: str
    total_units: int
    created_at: Optional[datetime]


class OrphanedOrderOut(BaseModel):
    order_id: int
    order_number: str
    status: str
    updated_at: Optional[datetime]
