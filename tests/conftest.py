# tests/conftest.py
from __future__ import annotations

import os
import tempfile
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

# ============================================================
# ★ 在 import app 之前固定 DATABASE_URL，避免落到工作目录的 fulfillment.db
# ============================================================
_TMP_DIR = tempfile.mkdtemp(prefix="fulfillment-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP_DIR}/app.db")
os.environ.setdefault("ENABLE_SESSION_CLEANUP_SCHEDULER", "false")

from fulfillment_engine.db.base import Base, init_models  # noqa: E402
from fulfillment_engine.db.engine import create_async_engine_safe  # noqa: E402
from fulfillment_engine.db.session import get_session  # noqa: E402
from fulfillment_engine.main import app  # noqa: E402
from fulfillment_engine.services.audit_sink import RecordingAuditSink, set_audit_sink  # noqa: E402

init_models()


# =========================================
# 每用例独立 SQLite 文件 + 独立 Engine（NullPool，避免跨 loop）
# =========================================
@pytest_asyncio.fixture(scope="function")
async def async_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    url = os.getenv("FULFILLMENT_TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path}/test.db"
    engine = create_async_engine_safe(url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def async_session_maker(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(async_session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    标准 Session（用例结束自动 commit / rollback）

    注意：SQLite 下每个事务都以 BEGIN IMMEDIATE 开始，
    与其它连接并发写之前，必须先 commit 释放写锁。
    """
    async with async_session_maker() as sess:
        try:
            yield sess
            if sess.in_transaction():
                await sess.commit()
        except Exception:
            if sess.in_transaction():
                await sess.rollback()
            raise


@pytest_asyncio.fixture(scope="function")
async def client(async_session_maker) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def _override() -> AsyncGenerator[AsyncSession, None]:
        async with async_session_maker() as sess:
            yield sess

    app.dependency_overrides[get_session] = _override
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as cli:
            yield cli
    finally:
        app.dependency_overrides.pop(get_session, None)


@pytest.fixture
def audit_records():
    """把全局审计接收端换成内存版，用例结束恢复。"""
    sink = RecordingAuditSink()
    prev = set_audit_sink(sink)
    try:
        yield sink.records
    finally:
        set_audit_sink(prev)
