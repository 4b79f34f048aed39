"""StepSync API: FastAPI application entry point.

Run locally:
    uvicorn stepsync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from stepsync.config import get_settings
from stepsync.fitness.errors import StepSyncError
from stepsync.routers import health, leaderboard, steps
from stepsync.services.database import close_pool, init_pool
from stepsync.services.container import StepSyncServices, build_services

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("stepsync")


# ---------- Error handling ----------

async def step_sync_error_handler(request: Request, exc: StepSyncError) -> JSONResponse:
    """Render engine errors as ``{"detail", "kind"}`` with the mapped status."""
    if exc.http_status >= 500:
        logger.error("%s %s failed [%s]: %s", request.method, request.url.path, exc.kind, exc)
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.message, "kind": exc.kind},
    )


# ---------- App factory ----------

def create_app(services: StepSyncServices | None = None) -> FastAPI:
    """Build the app.

    Args:
        services: Pre-built service bundle. When given, the lifespan neither
                  opens the database pool nor starts the nightly loop.
    """
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Startup / shutdown hooks."""
        logger.info(
            "Starting %s API v%s [%s]",
            settings.app_name,
            settings.app_version,
            settings.environment,
        )
        if not settings.google_client_id or not settings.google_client_secret:
            logger.warning("GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET not set; token refresh will fail")
        if services is not None:
            app.state.services = services
            yield
            return

        if settings.storage_backend == "postgres":
            await init_pool(settings)
        app.state.services = build_services(settings)
        if settings.scheduler_enabled:
            app.state.services.scheduler.start()
        try:
            yield
        finally:
            await app.state.services.aclose()
            if settings.storage_backend == "postgres":
                await close_pool()
            logger.info("StepSync API shut down")

    app = FastAPI(
        title="StepSync API",
        description="Nightly Google Fit step sync and step-count leaderboard.",
        version=settings.app_version,
        debug=settings.debug,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_exception_handler(StepSyncError, step_sync_error_handler)  # type: ignore[arg-type]

    app.include_router(health.router)
    app.include_router(steps.router)
    app.include_router(leaderboard.router)

    return app


app = create_app()
