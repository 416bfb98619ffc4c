# fulfillment_engine/db/session.py
# 异步会话工厂 + FastAPI 依赖
from __future__ import annotations

import re
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fulfillment_engine.core.config import get_settings
from fulfillment_engine.db.engine import create_async_engine_safe


def normalize_async_dsn(url: str) -> str:
    """把常见 DSN 写法统一到 psycopg3 / aiosqlite。"""
    url = url.strip().strip("'\"")
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite://" + url[len("sqlite://") :]
    if url.startswith("postgresql+asyncpg://") or url.startswith("postgres+asyncpg://"):
        return re.sub(r"^postgres(?:ql)?\+asyncpg://", "postgresql+psycopg://", url)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


_settings = get_settings()

ASYNC_URL = normalize_async_dsn(_settings.DATABASE_URL)

async_engine: AsyncEngine = create_async_engine_safe(ASYNC_URL, echo=_settings.SQL_ECHO)

AsyncSessionLocal: async_sessionmaker[AsyncSession] = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---- FastAPI 依赖 ----
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


async def close_engines() -> None:
    await async_engine.dispose()
