# fulfillment_engine/core/tx.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_engine.core.config import get_settings
from fulfillment_engine.services.audit_sink import audit_discard_since, audit_mark

logger = logging.getLogger("fulfillment.tx")


class TxStrategy(Protocol):
    """
    多行状态迁移（finish_picking 播种、complete_session 批量改单等）的事务策略。

    atomic=True ：整批要么全部生效，要么全部不生效
    atomic=False：降级兼容路径，逐步提交，存在竞态窗口
    """

    atomic: bool
    name: str

    def batch(self, session: AsyncSession, op: str) -> AsyncContextManager[None]: ...

    async def step_done(self, session: AsyncSession) -> None: ...


class AtomicTx:
    """
    主路径：整批包在保存点里。

    批次内任一步抛错 → 回滚到保存点，并丢弃批次内缓冲的审计记录；
    外层事务仍由路由层 commit / rollback。
    """

    atomic = True
    name = "atomic"

    @asynccontextmanager
    async def batch(self, session: AsyncSession, op: str) -> AsyncIterator[None]:
        mark = audit_mark(session)
        try:
            async with session.begin_nested():
                yield
        except Exception:
            audit_discard_since(session, mark)
            raise

    async def step_done(self, session: AsyncSession) -> None:
        await session.flush()


class SequentialTx:
    """
    降级路径：不使用保存点，每完成一步立即 commit。

    已知缺陷：
    - 中途失败时，已提交的步骤不会回滚（会话停在原阶段，需人工重试或放弃）
    - 每次 commit 都会释放行锁，步骤之间其它事务可以插入
    仅用于不支持保存点 / 长事务的部署环境。
    """

    atomic = False
    name = "sequential"

    @asynccontextmanager
    async def batch(self, session: AsyncSession, op: str) -> AsyncIterator[None]:
        logger.warning("DEGRADED_TX op=%s: running non-atomic sequential path", op)
        yield
        await session.flush()

    async def step_done(self, session: AsyncSession) -> None:
        await session.commit()


def get_tx_strategy(atomic: Optional[bool] = None) -> TxStrategy:
    if atomic is None:
        atomic = get_settings().FULFILLMENT_ATOMIC_TX
    return AtomicTx() if atomic else SequentialTx()
