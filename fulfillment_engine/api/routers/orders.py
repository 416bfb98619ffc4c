# fulfillment_engine/api/routers/orders.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.api.problem import raise_from_error
from fulfillment_engine.db.session import get_session
from fulfillment_engine.services.errors import FulfillmentError
from fulfillment_engine.services.order_source import OrderSource

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderStatusIn(BaseModel):
    status: str = Field(..., description="目标状态")
    actor_id: Optional[str] = None


class LineItemIn(BaseModel):
    product_id: Optional[int] = None
    quantity: int = Field(..., gt=0)
    sku: Optional[str] = None
    name: Optional[str] = None


class LineItemsIn(BaseModel):
    items: List[LineItemIn] = Field(..., min_length=1)


class OrderOut(BaseModel):
    id: int
    store_id: int
    order_number: str
    status: str
    line_item_source: str
    stock_deducted: bool

    model_config = ConfigDict(from_attributes=True)


@router.post("/{order_id}/status", response_model=OrderOut)
async def change_order_status(
    order_id: int,
    payload: OrderStatusIn,
    store_id: Optional[int] = Query(None),
    session: AsyncSession = Depends(get_session),
) -> OrderOut:
    src = OrderSource(session)
    try:
        order = await src.change_order_status(
            order_id, payload.status, actor_id=payload.actor_id, store_id=store_id
        )
        await session.commit()
    except FulfillmentError as e:
        await session.rollback()
        raise_from_error(e)
    except Exception:
        await session.rollback()
        raise
    return OrderOut.model_validate(order)


@router.put("/{order_id}/line-items", response_model=OrderOut)
async def replace_line_items(
    order_id: int,
    payload: LineItemsIn,
    store_id: Optional[int] = Query(None),
    session: AsyncSession = Depends(get_session),
) -> OrderOut:
    src = OrderSource(session)
    try:
        order = await src.replace_line_items(
            order_id, [i.model_dump() for i in payload.items], store_id=store_id
        )
        await session.commit()
    except FulfillmentError as e:
        await session.rollback()
        raise_from_error(e)
    except Exception:
        await session.rollback()
        raise
    return OrderOut.model_validate(order)


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_order(
    order_id: int,
    store_id: Optional[int] = Query(None),
    session: AsyncSession = Depends(get_session),
) -> None:
    src = OrderSource(session)
    try:
        await src.delete_order(order_id, store_id=store_id)
        await session.commit()
    except FulfillmentError as e:
        await session.rollback()
        raise_from_error(e)
    except Exception:
        await session.rollback()
        raise
