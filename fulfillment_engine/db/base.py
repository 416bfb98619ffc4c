# fulfillment_engine/db/base.py
from __future__ import annotations

import importlib
import logging
from typing import Iterable, List, Set

from sqlalchemy.orm import DeclarativeBase, configure_mappers

log = logging.getLogger("fulfillment.models")


class Base(DeclarativeBase):
    """全局唯一 ORM Base"""

    pass


_INITIALIZED: bool = False  # 防重复初始化

# 关系目标类以字符串引用，必须全部注册后再 configure_mappers()
MODEL_MODULES = [
    "fulfillment_engine.models.product",
    "fulfillment_engine.models.order",
    "fulfillment_engine.models.order_line_item",
    "fulfillment_engine.models.fulfillment_session",
    "fulfillment_engine.models.pick_item",
    "fulfillment_engine.models.packing_allocation",
    "fulfillment_engine.models.inventory_movement",
]


def init_models(*, exclude: Iterable[str] | None = None, force: bool = False) -> None:
    """集中导入模型 + 固化关系映射（create_all / alembic 之前调用）。"""
    global _INITIALIZED
    if _INITIALIZED and not force:
        return

    ex: Set[str] = set(exclude or [])
    loaded: List[str] = []
    for mod in MODEL_MODULES:
        if mod in ex:
            continue
        importlib.import_module(mod)
        loaded.append(mod)

    configure_mappers()
    _INITIALIZED = True
    log.info("ORM models initialized & mappers configured (loaded %d modules)", len(loaded))
