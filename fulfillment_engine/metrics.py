# fulfillment_engine/metrics.py
from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import REGISTRY, CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest
from prometheus_client import multiprocess

# 会话生命周期
SESSIONS_CREATED = Counter("fulfillment_sessions_created_total", "Fulfillment sessions created")
SESSIONS_COMPLETED = Counter("fulfillment_sessions_completed_total", "Fulfillment sessions completed")
SESSIONS_ABANDONED = Counter(
    "fulfillment_sessions_abandoned_total", "Fulfillment sessions abandoned", ["trigger"]
)

# 打包分配：result=ok|conflict|state
PACK_UNITS = Counter("fulfillment_pack_units_total", "Single-unit pack attempts", ["result"])

# 台账
STOCK_MOVEMENTS = Counter(
    "fulfillment_stock_movements_total", "Inventory movements written", ["kind"]
)
STOCK_CLAMPED = Counter(
    "fulfillment_stock_clamped_total", "Decrements clamped at zero stock (masked shortfall)"
)

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    单进程直接导出默认 REGISTRY；
    多进程模式下（设置了 PROMETHEUS_MULTIPROC_DIR）合并各分片。
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
