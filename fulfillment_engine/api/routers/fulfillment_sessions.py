# fulfillment_engine/api/routers/fulfillment_sessions.py
from __future__ import annotations

from fastapi import APIRouter

from fulfillment_engine.api.routers.fulfillment_sessions_routes_lifecycle import register as register_lifecycle
from fulfillment_engine.api.routers.fulfillment_sessions_routes_views import register as register_views

router = APIRouter(prefix="/fulfillment-sessions", tags=["fulfillment-sessions"])

# 静态路径（/stale、/confirmed-orders ...）必须先于 /{session_id} 注册
register_views(router)
register_lifecycle(router)
