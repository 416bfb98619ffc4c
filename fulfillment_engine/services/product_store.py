# fulfillment_engine/services/product_store.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.models.product import Product
from fulfillment_engine.services.errors import NotFoundError, ValidationError

UTC = timezone.utc


async def create_product(
    session: AsyncSession,
    *,
    store_id: int,
    name: str,
    sku: Optional[str] = None,
    initial_stock: int = 0,
) -> Product:
    """建档：stock 从 initial_stock 起步，之后只能经由台账变动。"""
    if int(initial_stock) < 0:
        raise ValidationError("初始库存不能为负数", context={"initial_stock": initial_stock})
    now = datetime.now(UTC)
    p = Product(
        store_id=int(store_id),
        name=name,
        sku=sku,
        stock=int(initial_stock),
        initial_stock=int(initial_stock),
        created_at=now,
        updated_at=now,
    )
    session.add(p)
    await session.flush()
    return p


async def get_product(
    session: AsyncSession,
    product_id: int,
    *,
    store_id: Optional[int] = None,
    for_update: bool = False,
) -> Product:
    stmt = select(Product).where(Product.id == int(product_id))
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    p = (await session.execute(stmt)).scalars().first()
    if p is None or (store_id is not None and p.store_id != int(store_id)):
        raise NotFoundError(f"商品不存在：id={product_id}", context={"product_id": product_id})
    return p


async def load_products(
    session: AsyncSession,
    product_ids: Iterable[int],
    *,
    for_update: bool = False,
) -> Dict[int, Product]:
    """
    批量加载商品；for_update 时按 id 升序加锁（全局统一顺序，避免死锁）。
    缺失的 id 不报错，由调用方决定如何处理。
    """
    ids: List[int] = sorted({int(x) for x in product_ids})
    if not ids:
        return {}
    stmt = select(Product).where(Product.id.in_(ids)).order_by(Product.id.asc())
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    rows = (await session.execute(stmt)).scalars().all()
    return {p.id: p for p in rows}
