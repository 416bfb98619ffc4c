# fulfillment_engine/core/scheduler.py
from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from fulfillment_engine.core.config import get_settings

logger = logging.getLogger("fulfillment.scheduler")

_scheduler: Optional[AsyncIOScheduler] = None


async def _job_cleanup_expired_sessions() -> None:
    from fulfillment_engine.db.session import AsyncSessionLocal
    from fulfillment_engine.services.session_stale import cleanup_expired_sessions

    async with AsyncSessionLocal() as session:
        try:
            result = await cleanup_expired_sessions(session, actor_id="scheduler")
            await session.commit()
        except Exception:
            await session.rollback()
            logger.exception("session cleanup job failed")
            return
    if result.count:
        logger.info("session cleanup: abandoned %s", ", ".join(result.abandoned))


def init_scheduler() -> Optional[AsyncIOScheduler]:
    global _scheduler
    settings = get_settings()
    if not settings.ENABLE_SESSION_CLEANUP_SCHEDULER or _scheduler is not None:
        return _scheduler
    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        _job_cleanup_expired_sessions,
        "interval",
        minutes=settings.CLEANUP_INTERVAL_MINUTES,
        id="cleanup_expired_sessions",
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info("scheduler started: cleanup every %s min", settings.CLEANUP_INTERVAL_MINUTES)
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
