"""FastAPI application factory.

Creates the app with logging and metrics middleware, Sentry, lifespan events
for database initialization and sync service wiring, the /metrics endpoint
and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.recordsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.recordsync.api.v1.router import router as v1_router
from src.recordsync.config import get_settings
from src.recordsync.core.database import close_db, get_session, init_db
from src.recordsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.recordsync.records.repository import SqlRecordStore
from src.recordsync.services import build_services

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and sync services on startup, stop them on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    store = SqlRecordStore(get_session)
    services = build_services(store, settings)

    app.state.record_store = store
    app.state.webhook_processor = services.processor
    app.state.sync_orchestrator = services.orchestrator
    app.state.linkers = services.linkers
    app.state.sync_scheduler = services.scheduler

    if not services.scheduler.start():
        logger.warning("app.scheduler_not_started")

    logger.info("app.started", environment=settings.ENVIRONMENT.value)
    yield

    # Stop scheduling new runs; in-flight runs finish on their own
    services.scheduler.stop()
    await close_db()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Record Sync API",
        version="0.1.0",
        description="Entity resolution and incremental synchronization across business systems",
        lifespan=lifespan,
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
