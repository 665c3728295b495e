# perishable/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from perishable.api.routers.items import router as items_router
from perishable.api.routers.metrics import router as metrics_router
from perishable.api.routers.purchases import router as purchases_router
from perishable.api.routers.reservations import router as reservations_router
from perishable.api.routers.webhooks import router as webhooks_router
from perishable.core.config import get_settings
from perishable.core.logging import setup_logging
from perishable.core.scheduler import init_scheduler, shutdown_scheduler
from perishable.db.session import close_engine, get_session_maker
from perishable.engine import assemble_engine
from perishable.http_problem_handlers import register_exception_handlers
from perishable.obs.metrics import PrometheusMiddleware

logger = logging.getLogger("perishable")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)

    # 测试可预先放入自己的 Engine（fake 供应商 / 临时库）
    if getattr(app.state, "engine", None) is None:
        app.state.engine = assemble_engine(settings, get_session_maker())
    init_scheduler(app.state.engine)
    logger.info("perishable engine started env=%s", settings.ENV)
    try:
        yield
    finally:
        shutdown_scheduler()
        await close_engine()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Perishable Reservation Engine",
        version="0.3.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.add_middleware(PrometheusMiddleware)
    register_exception_handlers(app)

    app.include_router(purchases_router)
    app.include_router(reservations_router)
    app.include_router(webhooks_router)
    app.include_router(items_router)
    app.include_router(metrics_router)
    return app


app = create_app()
