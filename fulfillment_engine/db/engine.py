# fulfillment_engine/db/engine.py
# 统一引擎工厂：PG 下开启 pre_ping；SQLite 下用 BEGIN IMMEDIATE 串行化写事务
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

__all__ = ["create_async_engine_safe", "install_sqlite_write_lock"]


def _connect_args_for(url_str: str) -> dict[str, Any]:
    backend = make_url(url_str).get_backend_name()

    if backend.startswith("postgresql"):
        # psycopg3 不接受 server_settings，用 libpq options 设置 application_name
        return {"application_name": "fulfillment-engine"}

    if backend.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}

    return {}


def install_sqlite_write_lock(engine: AsyncEngine) -> None:
    """
    SQLite 没有行级锁，SELECT ... FOR UPDATE 会被忽略。
    这里关闭驱动自带的隐式事务，改为每个事务都以 BEGIN IMMEDIATE 开始，
    让写事务整体串行化，从而在测试 / 单机环境中保持与 PG 行锁等价的语义。
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_async_engine_safe(url_str: str, *, echo: bool = False, **extra: Any) -> AsyncEngine:
    """Async 引擎（'postgresql+psycopg' 或 'sqlite+aiosqlite'）。"""
    u = make_url(url_str)
    backend = u.get_backend_name()

    kwargs: dict[str, Any] = {"echo": echo}
    if backend.startswith("postgresql"):
        kwargs["pool_pre_ping"] = True
    connect_args = _connect_args_for(url_str)
    if connect_args:
        kwargs["connect_args"] = connect_args
    kwargs.update(extra)

    engine = create_async_engine(url_str, **kwargs)
    if backend.startswith("sqlite"):
        install_sqlite_write_lock(engine)
    return engine
