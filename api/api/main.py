"""FastAPI application entry-point for the meterbridge service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from meter_engine.errors import QuotaExceeded, StoreUnavailable

from api import __version__
from api.config import APISettings, load_api_settings
from api.dependencies import dispose_runtime, init_runtime
from api.middleware.json_formatter import configure_json_logging
from api.middleware.logging import RequestLoggingMiddleware
from api.routers import health, runs, usage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Switch to structured JSON logging when enabled.
    - Open the quota store (creating tables in dev or SQLite mode) and
      build the metering runtime.
    - Start the periodic job scheduler when enabled.

    On shutdown:
    - Stop the scheduler, close HTTP clients and dispose the engine pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        configure_json_logging(logging.DEBUG if settings.debug else logging.INFO)
        logger.info("Structured JSON logging enabled")

    runtime = await init_runtime()
    logger.info("Metering runtime initialised")

    if settings.scheduler_enabled:
        await runtime.scheduler.start()

    yield

    await dispose_runtime()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    app = FastAPI(
        title="meterbridge API",
        description="Usage metering, quota admission and billing reconciliation.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(usage.router, prefix="/api/v1")
    app.include_router(runs.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(QuotaExceeded)
    async def quota_exceeded_handler(request: Request, exc: QuotaExceeded) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "detail": "Quota exceeded",
                "reason": exc.reason,
                "remaining": exc.remaining,
            },
        )

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
        logger.error("Quota store unavailable on %s: %s", request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=503, content={"detail": "Quota store unavailable"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
