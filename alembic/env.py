# alembic/env.py
from __future__ import annotations

import os
import re
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

# Alembic 基本配置
config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from fulfillment_engine.db.base import Base, init_models  # noqa: E402

init_models()
target_metadata = Base.metadata


def normalize_sync_url(url: str) -> str:
    """迁移走同步驱动：aiosqlite → sqlite，asyncpg / 裸 postgres → psycopg。"""
    url = url.strip().strip("'\"")
    url = url.replace("sqlite+aiosqlite://", "sqlite://", 1)
    url = re.sub(r"\+asyncpg\b|\+psycopg2\b|\+pg8000\b", "+psycopg", url, flags=re.I)
    url = re.sub(r"^postgres://", "postgresql+psycopg://", url, flags=re.I)
    if url.lower().startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def get_url() -> str:
    """
    优先级：
      1. DATABASE_URL
      2. alembic.ini 里的 sqlalchemy.url
    """
    url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        raise RuntimeError("Alembic 无法确定数据库 URL：请设置 DATABASE_URL 或 alembic.ini 的 sqlalchemy.url")
    return normalize_sync_url(url)


def run_migrations_offline() -> None:
    """Offline 模式：不真实连库，只生成 SQL。"""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=get_url().startswith("sqlite"),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Online 模式：真实连库执行迁移。"""
    url = get_url()
    engine = create_engine(url, poolclass=NullPool, future=True)
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=url.startswith("sqlite"),
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
