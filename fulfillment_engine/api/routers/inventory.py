# fulfillment_engine/api/routers/inventory.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.api.problem import raise_from_error
from fulfillment_engine.db.session import get_session
from fulfillment_engine.services.errors import FulfillmentError
from fulfillment_engine.services.ledger_replay import LedgerReplayService
from fulfillment_engine.services.stock_ledger import adjust_stock, list_movements

router = APIRouter(prefix="/inventory", tags=["inventory"])


class MovementOut(BaseModel):
    id: int
    store_id: int
    product_id: int
    order_id: Optional[int]
    kind: str
    quantity_change: int
    stock_before: int
    stock_after: int
    shortfall_qty: int
    status_from: Optional[str]
    status_to: Optional[str]
    actor_id: Optional[str]
    notes: Optional[str]
    created_at: datetime
    is_clamped: bool

    model_config = ConfigDict(from_attributes=True)


class AdjustIn(BaseModel):
    product_id: int
    delta: int = Field(..., description="正数入库 / 负数出库，不能为 0")
    reason: Optional[str] = Field(None, max_length=500)
    actor_id: Optional[str] = None


@router.get("/movements", response_model=List[MovementOut])
async def get_movements(
    product_id: Optional[int] = Query(None),
    order_id: Optional[int] = Query(None),
    store_id: Optional[int] = Query(None),
    limit: int = Query(200, ge=1, le=2000),
    session: AsyncSession = Depends(get_session),
) -> List[MovementOut]:
    rows = await list_movements(
        session, product_id=product_id, order_id=order_id, store_id=store_id, limit=limit
    )
    return [MovementOut.model_validate(m) for m in rows]


@router.post("/adjust", response_model=MovementOut)
async def post_adjust(
    payload: AdjustIn,
    store_id: Optional[int] = Query(None),
    session: AsyncSession = Depends(get_session),
) -> MovementOut:
    try:
        m = await adjust_stock(
            session,
            product_id=payload.product_id,
            delta=payload.delta,
            reason=payload.reason,
            actor_id=payload.actor_id,
            store_id=store_id,
        )
        await session.commit()
    except FulfillmentError as e:
        await session.rollback()
        raise_from_error(e)
    except Exception:
        await session.rollback()
        raise
    return MovementOut.model_validate(m)


@router.get("/replay/{product_id}")
async def get_replay(
    product_id: int,
    store_id: Optional[int] = Query(None),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    try:
        return await LedgerReplayService.replay_product(session, product_id, store_id=store_id)
    except FulfillmentError as e:
        raise_from_error(e)


@router.get("/verify")
async def get_verify(
    store_id: int = Query(...),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    bad = await LedgerReplayService.verify_store(session, store_id)
    return {"store_id": store_id, "consistent": not bad, "inconsistent": bad}
