# fulfillment_engine/services/fulfillment_session_service.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.core.tx import TxStrategy, get_tx_strategy
from fulfillment_engine.models.fulfillment_session import FulfillmentSession
from fulfillment_engine.models.packing_allocation import PackingAllocation
from fulfillment_engine.models.pick_item import AggregatedPickItem
from fulfillment_engine.services.errors import ValidationError
from fulfillment_engine.services.order_source import OrderSource
from fulfillment_engine.services.session_abandon import abandon_session as _abandon_session
from fulfillment_engine.services.session_abandon import (
    remove_order_from_session as _remove_order_from_session,
)
from fulfillment_engine.services.session_complete import complete_session as _complete_session
from fulfillment_engine.services.session_create import create_session as _create_session
from fulfillment_engine.services.session_packing import get_packing_view as _get_packing_view
from fulfillment_engine.services.session_packing import pack_unit as _pack_unit
from fulfillment_engine.services.session_picking import finish_picking as _finish_picking
from fulfillment_engine.services.session_picking import report_picked as _report_picked
from fulfillment_engine.services.session_stale import (
    cleanup_expired_sessions as _cleanup_expired_sessions,
)
from fulfillment_engine.services.session_stale import list_stale_sessions as _list_stale_sessions
from fulfillment_engine.services.session_types import (
    ActiveSessionView,
    CleanupResult,
    PackingView,
    PickListLine,
    RemoveOrderResult,
    SessionSummary,
    StaleSession,
)
from fulfillment_engine.services.session_views import get_active_sessions as _get_active_sessions
from fulfillment_engine.services.session_views import get_confirmed_orders as _get_confirmed_orders
from fulfillment_engine.services.session_views import get_orphaned_orders as _get_orphaned_orders
from fulfillment_engine.services.session_views import get_picking_list as _get_picking_list
from fulfillment_engine.services.session_views import get_session_detail as _get_session_detail


class FulfillmentSessionService:
    """
    履约会话门面：只 flush，不 commit（事务边界由调用方 / 路由层负责）。

    store_id 作为租户边界：传入时，其它店铺的会话一律按不存在处理。
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        store_id: Optional[int] = None,
        order_source: Optional[OrderSource] = None,
        tx: Optional[TxStrategy] = None,
    ) -> None:
        self.session = session
        self.store_id = store_id
        self.orders = order_source or OrderSource(session)
        self.tx = tx or get_tx_strategy()

    async def create_session(
        self,
        *,
        order_ids: Sequence[int],
        actor_id: Optional[str] = None,
        store_id: Optional[int] = None,
    ) -> FulfillmentSession:
        sid = store_id if store_id is not None else self.store_id
        if sid is None:
            raise ValidationError("建批次必须指定 store_id", error_code="store_required")
        return await _create_session(
            self.session,
            store_id=sid,
            order_ids=order_ids,
            actor_id=actor_id,
            order_source=self.orders,
            tx=self.tx,
        )

    async def report_picked(
        self,
        *,
        session_id: int,
        product_id: int,
        quantity: int,
    ) -> AggregatedPickItem:
        return await _report_picked(
            self.session,
            session_id=session_id,
            product_id=product_id,
            quantity=quantity,
            store_id=self.store_id,
        )

    async def finish_picking(self, *, session_id: int) -> FulfillmentSession:
        return await _finish_picking(
            self.session,
            session_id=session_id,
            store_id=self.store_id,
            order_source=self.orders,
            tx=self.tx,
        )

    async def get_packing_view(self, *, session_id: int) -> PackingView:
        return await _get_packing_view(
            self.session, session_id=session_id, store_id=self.store_id, order_source=self.orders
        )

    async def pack_unit(
        self,
        *,
        session_id: int,
        order_id: int,
        product_id: int,
    ) -> PackingAllocation:
        return await _pack_unit(
            self.session,
            session_id=session_id,
            order_id=order_id,
            product_id=product_id,
            store_id=self.store_id,
            order_source=self.orders,
        )

    async def complete_session(
        self,
        *,
        session_id: int,
        actor_id: Optional[str] = None,
    ) -> FulfillmentSession:
        return await _complete_session(
            self.session,
            session_id=session_id,
            actor_id=actor_id,
            store_id=self.store_id,
            order_source=self.orders,
            tx=self.tx,
        )

    async def abandon_session(
        self,
        *,
        session_id: int,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> SessionSummary:
        return await _abandon_session(
            self.session,
            session_id=session_id,
            reason=reason,
            actor_id=actor_id,
            store_id=self.store_id,
            order_source=self.orders,
        )

    async def remove_order_from_session(
        self,
        *,
        session_id: int,
        order_id: int,
        actor_id: Optional[str] = None,
    ) -> RemoveOrderResult:
        return await _remove_order_from_session(
            self.session,
            session_id=session_id,
            order_id=order_id,
            actor_id=actor_id,
            store_id=self.store_id,
            order_source=self.orders,
        )

    async def list_stale_sessions(self, *, store_id: Optional[int] = None) -> List[StaleSession]:
        return await _list_stale_sessions(
            self.session, store_id=store_id if store_id is not None else self.store_id
        )

    async def cleanup_expired_sessions(
        self,
        *,
        inactive_hours: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> CleanupResult:
        return await _cleanup_expired_sessions(
            self.session,
            inactive_hours=inactive_hours,
            store_id=self.store_id,
            actor_id=actor_id,
            order_source=self.orders,
        )

    # ---- 只读视图 ----

    async def get_session(self, *, session_id: int) -> Dict[str, Any]:
        return await _get_session_detail(self.session, session_id=session_id, store_id=self.store_id)

    async def get_picking_list(self, *, session_id: int) -> List[PickListLine]:
        return await _get_picking_list(self.session, session_id=session_id, store_id=self.store_id)

    async def get_active_sessions(self) -> List[ActiveSessionView]:
        return await _get_active_sessions(self.session, store_id=self.store_id)

    async def get_confirmed_orders(self, *, store_id: int, limit: int = 200) -> List[Dict[str, Any]]:
        return await _get_confirmed_orders(self.session, store_id=store_id, limit=limit)

    async def get_orphaned_orders(self, *, store_id: int) -> List[Dict[str, Any]]:
        return await _get_orphaned_orders(self.session, store_id=store_id)
