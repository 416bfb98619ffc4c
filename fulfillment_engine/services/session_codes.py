# fulfillment_engine/services/session_codes.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.models.fulfillment_session import FulfillmentSession

CODE_PREFIX = "PREP"


def format_session_code(day: datetime, seq: int) -> str:
    """PREP-DDMMYYYY-NNN"""
    return f"{CODE_PREFIX}-{day.strftime('%d%m%Y')}-{int(seq):03d}"


def parse_session_seq(code: str) -> Optional[int]:
    parts = (code or "").split("-")
    if len(parts) != 3 or parts[0] != CODE_PREFIX:
        return None
    try:
        return int(parts[2])
    except ValueError:
        return None


async def next_session_code(session: AsyncSession, *, store_id: int, now: datetime) -> str:
    """
    店铺内按天递增的序号。

    PG：事务级 advisory lock 串行化同店同日的取号；
    SQLite：写事务本身以 BEGIN IMMEDIATE 串行，无需额外加锁。
    唯一约束 (store_id, code) 兜底。
    """
    day_prefix = f"{CODE_PREFIX}-{now.strftime('%d%m%Y')}-"

    if session.get_bind().dialect.name == "postgresql":
        await session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:k))"),
            {"k": f"fulfillment_session_code:{int(store_id)}:{day_prefix}"},
        )

    rows = await session.execute(
        select(FulfillmentSession.code).where(
            FulfillmentSession.store_id == int(store_id),
            FulfillmentSession.code.like(day_prefix + "%"),
        )
    )
    seqs = [s for s in (parse_session_seq(c) for c in rows.scalars().all()) if s is not None]
    return format_session_code(now, (max(seqs) if seqs else 0) + 1)
