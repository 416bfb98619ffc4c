# fulfillment_engine/services/audit_sink.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from fulfillment_engine.models.inventory_movement import InventoryMovement

logger = logging.getLogger("fulfillment.audit")

_PENDING_KEY = "fulfillment.pending_audit"


class AuditSink(Protocol):
    """外部报表 / 审计的接收端，只接收已提交的台账记录。"""

    def publish(self, records: Sequence[Dict[str, Any]]) -> None: ...


class LoggingAuditSink:
    def publish(self, records: Sequence[Dict[str, Any]]) -> None:
        for r in records:
            logger.info(
                "MOVEMENT id=%s kind=%s product=%s order=%s delta=%s %s->%s shortfall=%s",
                r.get("id"),
                r.get("kind"),
                r.get("product_id"),
                r.get("order_id"),
                r.get("quantity_change"),
                r.get("stock_before"),
                r.get("stock_after"),
                r.get("shortfall_qty"),
            )


class RecordingAuditSink:
    """内存接收端（测试 / 调试用）。"""

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []

    def publish(self, records: Sequence[Dict[str, Any]]) -> None:
        self.records.extend(records)


_sink: AuditSink = LoggingAuditSink()


def get_audit_sink() -> AuditSink:
    return _sink


def set_audit_sink(sink: Optional[AuditSink]) -> AuditSink:
    """替换全局接收端，返回旧的；传 None 恢复默认日志接收端。"""
    global _sink
    prev = _sink
    _sink = sink if sink is not None else LoggingAuditSink()
    return prev


def movement_to_record(m: InventoryMovement) -> Dict[str, Any]:
    return {
        "id": m.id,
        "store_id": m.store_id,
        "product_id": m.product_id,
        "order_id": m.order_id,
        "kind": m.kind,
        "quantity_change": m.quantity_change,
        "stock_before": m.stock_before,
        "stock_after": m.stock_after,
        "shortfall_qty": m.shortfall_qty,
        "status_from": m.status_from,
        "status_to": m.status_to,
        "actor_id": m.actor_id,
        "notes": m.notes,
    }


# ---------------------------------------------------------------------------
# 缓冲：记录挂在 DB session 上，外层事务提交后才发布，回滚则丢弃
# ---------------------------------------------------------------------------


def _pending(sync_session: Session) -> List[Dict[str, Any]]:
    return sync_session.info.setdefault(_PENDING_KEY, [])


def queue_movements(session: AsyncSession, movements: Sequence[InventoryMovement]) -> None:
    """调用前必须已 flush（需要 id）。"""
    _pending(session.sync_session).extend(movement_to_record(m) for m in movements)


def audit_mark(session: AsyncSession) -> int:
    return len(_pending(session.sync_session))


def audit_discard_since(session: AsyncSession, mark: int) -> None:
    """保存点回滚时丢弃该批次内缓冲的记录。"""
    del _pending(session.sync_session)[mark:]


@event.listens_for(Session, "after_commit")
def _publish_after_commit(sync_session: Session) -> None:
    records = sync_session.info.pop(_PENDING_KEY, None)
    if not records:
        return
    try:
        get_audit_sink().publish(records)
    except Exception:
        # 已提交的数据不受影响；接收端故障只记录
        logger.exception("audit sink publish failed (%d records)", len(records))


@event.listens_for(Session, "after_soft_rollback")
def _discard_after_rollback(sync_session: Session, previous_transaction) -> None:
    # 保存点回滚由 audit_discard_since 处理；这里只管最外层事务
    if previous_transaction.parent is None:
        sync_session.info.pop(_PENDING_KEY, None)
