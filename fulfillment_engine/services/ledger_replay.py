# fulfillment_engine/services/ledger_replay.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.models.inventory_movement import InventoryMovement
from fulfillment_engine.models.product import Product
from fulfillment_engine.services.product_store import get_product


class LedgerReplayService:
    """
    Ledger Replay
    -------------
    从 initial_stock 出发按 id 顺序逐条重放台账，校验：
        initial_stock + Σ quantity_change == 当前 stock
    同时列出被钳位（shortfall_qty > 0）的扣减，便于人工核对被掩盖的缺口。
    """

    @staticmethod
    async def replay_product(
        session: AsyncSession,
        product_id: int,
        *,
        store_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        p = await get_product(session, product_id, store_id=store_id)

        rows = (
            (
                await session.execute(
                    select(InventoryMovement)
                    .where(InventoryMovement.product_id == p.id)
                    .order_by(InventoryMovement.id.asc())
                )
            )
            .scalars()
            .all()
        )

        running = int(p.initial_stock)
        timeline: List[Dict[str, Any]] = []
        clamped: List[Dict[str, Any]] = []
        gaps = 0

        for m in rows:
            before = running
            running = before + int(m.quantity_change)
            # 记录的 before 与重放值不一致 → 有绕过台账的写入
            if int(m.stock_before) != before:
                gaps += 1
            entry = {
                "id": m.id,
                "created_at": m.created_at,
                "kind": m.kind,
                "order_id": m.order_id,
                "delta": int(m.quantity_change),
                "before": before,
                "after": running,
                "recorded_before": int(m.stock_before),
                "recorded_after": int(m.stock_after),
                "shortfall_qty": int(m.shortfall_qty or 0),
            }
            timeline.append(entry)
            if entry["shortfall_qty"] > 0:
                clamped.append(entry)

        ledger_total = running - int(p.initial_stock)
        return {
            "product_id": p.id,
            "sku": p.sku,
            "initial_stock": int(p.initial_stock),
            "ledger_total": ledger_total,
            "expected_stock": running,
            "current_stock": int(p.stock),
            "consistent": running == int(p.stock) and gaps == 0,
            "sequence_gaps": gaps,
            "clamped": clamped,
            "timeline": timeline,
        }

    @staticmethod
    async def verify_store(session: AsyncSession, store_id: int) -> List[Dict[str, Any]]:
        """只返回不一致的商品。"""
        sums = (
            select(
                InventoryMovement.product_id.label("product_id"),
                func.coalesce(func.sum(InventoryMovement.quantity_change), 0).label("total"),
            )
            .group_by(InventoryMovement.product_id)
            .subquery()
        )
        stmt = (
            select(Product, func.coalesce(sums.c.total, 0))
            .outerjoin(sums, sums.c.product_id == Product.id)
            .where(Product.store_id == int(store_id))
            .order_by(Product.id.asc())
        )
        out: List[Dict[str, Any]] = []
        for p, total in (await session.execute(stmt)).all():
            expected = int(p.initial_stock) + int(total or 0)
            if expected != int(p.stock):
                out.append(
                    {
                        "product_id": p.id,
                        "sku": p.sku,
                        "initial_stock": int(p.initial_stock),
                        "ledger_total": int(total or 0),
                        "expected_stock": expected,
                        "current_stock": int(p.stock),
                    }
                )
        return out
