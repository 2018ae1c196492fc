"""FastAPI application factory.

Creates the app with logging middleware, Sentry, the sync and health
routes, and the Prometheus /metrics endpoint.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.dealsync.api.middleware import LoggingMiddleware
from src.dealsync.api.routes import router
from src.dealsync.config import get_settings
from src.dealsync.core.logging import configure_structlog
from src.dealsync.core.monitoring import get_metrics_response, init_sentry


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: logging and Sentry on startup."""
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    structlog.get_logger(__name__).info(
        "app.started", environment=settings.ENVIRONMENT.value
    )
    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="dealsync",
        version="0.1.0",
        description="Deadline-aware resumable deal synchronization from S3 to HubSpot",
        lifespan=lifespan,
    )

    app.add_middleware(LoggingMiddleware)
    app.include_router(router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
