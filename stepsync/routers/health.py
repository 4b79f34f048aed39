"""Health check endpoint. Public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from stepsync.dependencies import AppSettings, Services
from stepsync.fitness.errors import StorageError

router = APIRouter(tags=["system"])
logger = logging.getLogger("stepsync.health")


@router.get("/health")
async def health_check(services: Services, settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight storage check and reports whether the
    nightly sync loop is running.
    """
    db_ok = False
    try:
        await services.steps.leaderboard(1)
        db_ok = True
    except StorageError as exc:
        logger.warning("Health check storage probe failed: %s", exc)

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "scheduler": "running" if services.scheduler.running else "stopped",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
