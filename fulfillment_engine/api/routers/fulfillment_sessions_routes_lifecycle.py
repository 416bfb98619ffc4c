# fulfillment_engine/api/routers/fulfillment_sessions_routes_lifecycle.py
from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.api.problem import raise_from_error
from fulfillment_engine.api.routers.fulfillment_sessions_schemas import (
    AbandonIn,
    AllocationOut,
    CleanupIn,
    CleanupOut,
    CompleteIn,
    PackIn,
    PickedIn,
    PickItemOut,
    RemoveOrderOut,
    SessionCreateIn,
    SessionOut,
    SessionSummaryOut,
)
from fulfillment_engine.db.session import get_session
from fulfillment_engine.services.errors import FulfillmentError
from fulfillment_engine.services.fulfillment_session_service import FulfillmentSessionService


def register(router: APIRouter) -> None:
    @router.post("", response_model=SessionOut, status_code=status.HTTP_201_CREATED)
    async def create_fulfillment_session(
        payload: SessionCreateIn,
        session: AsyncSession = Depends(get_session),
    ) -> SessionOut:
        svc = FulfillmentSessionService(session, store_id=payload.store_id)
        try:
            fs = await svc.create_session(order_ids=payload.order_ids, actor_id=payload.actor_id)
            await session.commit()
        except FulfillmentError as e:
            await session.rollback()
            raise_from_error(e)
        except Exception:
            await session.rollback()
            raise
        return SessionOut.model_validate(fs)

    @router.post("/cleanup", response_model=CleanupOut)
    async def cleanup_expired_sessions(
        payload: CleanupIn,
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> CleanupOut:
        svc = FulfillmentSessionService(session, store_id=store_id)
        try:
            result = await svc.cleanup_expired_sessions(inactive_hours=payload.inactive_hours)
            await session.commit()
        except FulfillmentError as e:
            await session.rollback()
            raise_from_error(e)
        except Exception:
            await session.rollback()
            raise
        return CleanupOut(inactive_hours=result.inactive_hours, abandoned=result.abandoned, count=result.count)

    @router.post("/{session_id}/picked", response_model=PickItemOut)
    async def report_picked(
        session_id: int,
        payload: PickedIn,
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> PickItemOut:
        svc = FulfillmentSessionService(session, store_id=store_id)
        try:
            item = await svc.report_picked(
                session_id=session_id,
                product_id=payload.product_id,
                quantity=payload.quantity,
            )
            await session.commit()
        except FulfillmentError as e:
            await session.rollback()
            raise_from_error(e)
        except Exception:
            await session.rollback()
            raise
        return PickItemOut.model_validate(item)

    @router.post("/{session_id}/finish-picking", response_model=SessionOut)
    async def finish_picking(
        session_id: int,
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> SessionOut:
        svc = FulfillmentSessionService(session, store_id=store_id)
        try:
            fs = await svc.finish_picking(session_id=session_id)
            await session.commit()
        except FulfillmentError as e:
            await session.rollback()
            raise_from_error(e)
        except Exception:
            await session.rollback()
            raise
        return SessionOut.model_validate(fs)

    @router.post("/{session_id}/pack", response_model=AllocationOut)
    async def pack_unit(
        session_id: int,
        payload: PackIn,
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> AllocationOut:
        svc = FulfillmentSessionService(session, store_id=store_id)
        try:
            alloc = await svc.pack_unit(
                session_id=session_id,
                order_id=payload.order_id,
                product_id=payload.product_id,
            )
            await session.commit()
        except FulfillmentError as e:
            await session.rollback()
            raise_from_error(e)
        except Exception:
            await session.rollback()
            raise
        return AllocationOut.model_validate(alloc)

    @router.post("/{session_id}/complete", response_model=SessionOut)
    async def complete_session(
        session_id: int,
        payload: Optional[CompleteIn] = None,
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> SessionOut:
        svc = FulfillmentSessionService(session, store_id=store_id)
        try:
            fs = await svc.complete_session(
                session_id=session_id,
                actor_id=payload.actor_id if payload else None,
            )
            await session.commit()
        except FulfillmentError as e:
            await session.rollback()
            raise_from_error(e)
        except Exception:
            await session.rollback()
            raise
        return SessionOut.model_validate(fs)

    @router.post("/{session_id}/abandon", response_model=SessionSummaryOut)
    async def abandon_session(
        session_id: int,
        payload: AbandonIn,
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> SessionSummaryOut:
        svc = FulfillmentSessionService(session, store_id=store_id)
        try:
            summary = await svc.abandon_session(
                session_id=session_id,
                reason=payload.reason,
                actor_id=payload.actor_id,
            )
            await session.commit()
        except FulfillmentError as e:
            await session.rollback()
            raise_from_error(e)
        except Exception:
            await session.rollback()
            raise
        return SessionSummaryOut.model_validate(asdict(summary))

    @router.delete("/{session_id}/orders/{order_id}", response_model=RemoveOrderOut)
    async def remove_order_from_session(
        session_id: int,
        order_id: int,
        actor_id: Optional[str] = Query(None),
        store_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> RemoveOrderOut:
        svc = FulfillmentSessionService(session, store_id=store_id)
        try:
            result = await svc.remove_order_from_session(
                session_id=session_id,
                order_id=order_id,
                actor_id=actor_id,
            )
            await session.commit()
        except FulfillmentError as e:
            await session.rollback()
            raise_from_error(e)
        except Exception:
            await session.rollback()
            raise
        return RemoveOrderOut.model_validate(asdict(result))
