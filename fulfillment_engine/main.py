# fulfillment_engine/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fulfillment_engine.api.routers.fulfillment_sessions import router as fulfillment_sessions_router
from fulfillment_engine.api.routers.inventory import router as inventory_router
from fulfillment_engine.api.routers.orders import router as orders_router
from fulfillment_engine.core.config import get_settings
from fulfillment_engine.core.logging import setup_logging
from fulfillment_engine.core.scheduler import init_scheduler, shutdown_scheduler
from fulfillment_engine.db.base import init_models
from fulfillment_engine.http_problem_handlers import register_exception_handlers
from fulfillment_engine.metrics import router as metrics_router

settings = get_settings()
logger = logging.getLogger("fulfillment")

init_models()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)
    init_scheduler()
    logger.info("fulfillment-engine started (env=%s, atomic_tx=%s)", settings.ENV, settings.FULFILLMENT_ATOMIC_TX)
    try:
        yield
    finally:
        shutdown_scheduler()


app = FastAPI(
    title="Fulfillment Engine",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

register_exception_handlers(app)

app.include_router(fulfillment_sessions_router)
app.include_router(inventory_router)
app.include_router(orders_router)
app.include_router(metrics_router)


@app.get("/")
async def root():
    return {"name": "fulfillment-engine", "version": "1.0.0"}


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}
