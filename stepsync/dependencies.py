"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from stepsync.config import Settings, get_settings
from stepsync.services.container import StepSyncServices


def get_services(request: Request) -> StepSyncServices:
    """Return the service bundle built in the app lifespan."""
    services: StepSyncServices | None = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Step sync services not initialized")
    return services


# Annotated shortcuts for route signatures
Services = Annotated[StepSyncServices, Depends(get_services)]
AppSettings = Annotated[Settings, Depends(get_settings)]
