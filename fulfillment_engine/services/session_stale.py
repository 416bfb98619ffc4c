# fulfillment_engine/services/session_stale.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.core.config import get_settings
from fulfillment_engine.models.enums import SessionStatus
from fulfillment_engine.models.fulfillment_session import FulfillmentSession, SessionOrderLink
from fulfillment_engine.services.errors import ValidationError
from fulfillment_engine.services.order_source import OrderSource
from fulfillment_engine.services.session_abandon import abandon_locked
from fulfillment_engine.services.session_loaders import load_session
from fulfillment_engine.services.session_types import CleanupResult, StaleSession

logger = logging.getLogger("fulfillment.sessions")

UTC = timezone.utc

LEVEL_OK = "OK"
LEVEL_WARNING = "WARNING"
LEVEL_CRITICAL = "CRITICAL"


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite 取回的是 naive datetime（写入时统一为 UTC）
    if dt is None:
        return None
    return dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt.astimezone(UTC)


def staleness_level(hours_inactive: float, *, warning_hours: int, critical_hours: int) -> str:
    if hours_inactive > critical_hours:
        return LEVEL_CRITICAL
    if hours_inactive > warning_hours:
        return LEVEL_WARNING
    return LEVEL_OK


def hours_inactive(fs: FulfillmentSession, now: datetime) -> float:
    ref = as_utc(fs.last_activity_at) or as_utc(fs.created_at) or now
    return max(0.0, (now - ref).total_seconds() / 3600.0)


async def _open_sessions(session: AsyncSession, store_id: Optional[int]) -> List[FulfillmentSession]:
    stmt = select(FulfillmentSession).where(
        FulfillmentSession.status.in_([SessionStatus.PICKING.value, SessionStatus.PACKING.value]),
        FulfillmentSession.abandoned_at.is_(None),
    )
    if store_id is not None:
        stmt = stmt.where(FulfillmentSession.store_id == int(store_id))
    return list((await session.execute(stmt.order_by(FulfillmentSession.id.asc()))).scalars().all())


async def list_stale_sessions(
    session: AsyncSession,
    *,
    store_id: Optional[int] = None,
    warning_hours: Optional[int] = None,
    critical_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[StaleSession]:
    """未结束、超过 warning 阈值无操作的会话；最久未动的排前面。"""
    settings = get_settings()
    warn = int(warning_hours if warning_hours is not None else settings.STALE_WARNING_HOURS)
    crit = int(critical_hours if critical_hours is not None else settings.STALE_CRITICAL_HOURS)
    if warn <= 0 or crit < warn:
        raise ValidationError(
            "滞留阈值必须满足 0 < warning <= critical",
            error_code="invalid_threshold",
            context={"warning_hours": warn, "critical_hours": crit},
        )
    now = now or datetime.now(UTC)

    sessions = await _open_sessions(session, store_id)
    if not sessions:
        return []

    counts = dict(
        (
            await session.execute(
                select(SessionOrderLink.session_id, func.count(SessionOrderLink.id))
                .where(SessionOrderLink.session_id.in_([s.id for s in sessions]))
                .group_by(SessionOrderLink.session_id)
            )
        ).all()
    )

    out: List[StaleSession] = []
    for fs in sessions:
        h = hours_inactive(fs, now)
        level = staleness_level(h, warning_hours=warn, critical_hours=crit)
        if level == LEVEL_OK:
            continue
        out.append(
            StaleSession(
                session_id=fs.id,
                store_id=fs.store_id,
                code=fs.code,
                status=fs.status,
                last_activity_at=fs.last_activity_at,
                hours_inactive=round(h, 2),
                level=level,
                order_count=int(counts.get(fs.id, 0)),
            )
        )
    out.sort(key=lambda s: s.hours_inactive, reverse=True)
    return out


async def cleanup_expired_sessions(
    session: AsyncSession,
    *,
    inactive_hours: Optional[int] = None,
    store_id: Optional[int] = None,
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
    order_source: Optional[OrderSource] = None,
) -> CleanupResult:
    """
    维护任务：放弃超过阈值无操作的会话（订单退回 confirmed）。
    只是运维清理，不承担正确性；逐个加锁后重新判断，避免误伤刚恢复活动的会话。
    """
    hours = int(
        inactive_hours if inactive_hours is not None else get_settings().CLEANUP_INACTIVE_HOURS
    )
    if hours <= 0:
        raise ValidationError("清理阈值必须 > 0 小时", error_code="invalid_threshold")
    now = now or datetime.now(UTC)
    src = order_source or OrderSource(session)

    result = CleanupResult(inactive_hours=hours)
    candidates = [fs.id for fs in await _open_sessions(session, store_id) if hours_inactive(fs, now) > hours]
    for sid in candidates:
        fs = await load_session(session, sid, for_update=True)
        if fs.status == SessionStatus.COMPLETED.value or hours_inactive(fs, now) <= hours:
            continue
        await abandon_locked(
            session,
            fs,
            reason=f"Auto-abandoned: inactive for more than {hours} hours",
            actor_id=actor_id,
            trigger="auto_expired",
            order_source=src,
        )
        result.abandoned.append(fs.code)

    if result.abandoned:
        logger.info("SESSION_CLEANUP abandoned=%d threshold=%sh", len(result.abandoned), hours)
    return result
