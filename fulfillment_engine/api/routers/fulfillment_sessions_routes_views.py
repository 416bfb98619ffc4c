# fulfillment_engine/api/routers/fulfillment_sessions_routes_views.py
from __future__ import annotations

from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.api.problem import raise_from_error
from fulfillment_engine.api.routers.fulfillment_sessions_schemas import (
    ActiveSessionOut,
    ConfirmedOrderOut,
    OrphanedOrderOut,
    PackingViewOut,
    PickListLineOut,
    SessionDetailOut,
    SessionOrderOut,
    SessionOut,
    StaleSessionOut,
)
from fulfillment_engine.db.session import get_session
from fulfillment_engine.services.errors import FulfillmentError
from fulfillment_engine.services.fulfillment_session_service import FulfillmentSessionService


def register(router: APIRouter) -> None:
    @router.get("", response_model=List[ActiveSessionOut])
    async def list_active_sessions(
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> List[ActiveSessionOut]:
        svc = FulfillmentSessionService(session, store_id=store_id)
        rows = await svc.get_active_sessions()
        return [ActiveSessionOut.model_validate(asdict(r)) for r in rows]

    @router.get("/stale", response_model=List[StaleSessionOut])
    async def list_stale_sessions(
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> List[StaleSessionOut]:
        svc = FulfillmentSessionService(session, store_id=store_id)
        rows = await svc.list_stale_sessions()
        return [StaleSessionOut.model_validate(asdict(r)) for r in rows]

    @router.get("/confirmed-orders", response_model=List[ConfirmedOrderOut])
    async def list_confirmed_orders(
        store_id: int = Query(...),
        limit: int = Query(200, ge=1, le=1000),
        session: AsyncSession = Depends(get_session),
    ) -> List[ConfirmedOrderOut]:
        svc = FulfillmentSessionService(session, store_id=store_id)
        rows = await svc.get_confirmed_orders(store_id=store_id, limit=limit)
        return [ConfirmedOrderOut(**r) for r in rows]

    @router.get("/orphaned-orders", response_model=List[OrphanedOrderOut])
    async def list_orphaned_orders(
        store_id: int = Query(...),
        session: AsyncSession = Depends(get_session),
    ) -> List[OrphanedOrderOut]:
        svc = FulfillmentSessionService(session, store_id=store_id)
        rows = await svc.get_orphaned_orders(store_id=store_id)
        return [OrphanedOrderOut(**r) for r in rows]

    @router.get("/{session_id}", response_model=SessionDetailOut)
    async def get_fulfillment_session(
        session_id: int = Path(..., description="履约会话 ID"),
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> SessionDetailOut:
        svc = FulfillmentSessionService(session, store_id=store_id)
        try:
            detail = await svc.get_session(session_id=session_id)
        except FulfillmentError as e:
            raise_from_error(e)
        return SessionDetailOut(
            session=SessionOut.model_validate(detail["session"]),
            orders=[SessionOrderOut.model_validate(o) for o in detail["orders"]],
            picking_list=[PickListLineOut.model_validate(asdict(x)) for x in detail["picking_list"]],
        )

    @router.get("/{session_id}/picking-list", response_model=List[PickListLineOut])
    async def get_picking_list(
        session_id: int,
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> List[PickListLineOut]:
        svc = FulfillmentSessionService(session, store_id=store_id)
        try:
            rows = await svc.get_picking_list(session_id=session_id)
        except FulfillmentError as e:
            raise_from_error(e)
        return [PickListLineOut.model_validate(asdict(r)) for r in rows]

    @router.get("/{session_id}/packing", response_model=PackingViewOut)
    async def get_packing_view(
        session_id: int,
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> PackingViewOut:
        svc = FulfillmentSessionService(session, store_id=store_id)
        try:
            view = await svc.get_packing_view(session_id=session_id)
        except FulfillmentError as e:
            raise_from_error(e)
        return PackingViewOut.model_validate(asdict(view))
