"""Step sync endpoints: fleet sync, single-user sync, backfill, history."""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Query

from stepsync.dependencies import Services
from stepsync.models.base import ErrorDetail
from stepsync.models.steps import DailyStepRead, SyncAllResponse, SyncHistoryResponse

router = APIRouter(
    prefix="/steps",
    tags=["steps"],
    responses={
        401: {"model": ErrorDetail, "description": "Google credentials rejected or revoked"},
        404: {"model": ErrorDetail, "description": "Unknown user or no linked Google account"},
        502: {"model": ErrorDetail, "description": "Google Fit returned an error"},
        503: {"model": ErrorDetail, "description": "Google Fit unreachable"},
    },
)


@router.post("/sync-all", response_model=SyncAllResponse, status_code=202)
async def sync_all(services: Services) -> Any:
    """Start a fleet sync of yesterday's steps in the background."""
    return services.scheduler.trigger_fleet_sync()


@router.put("/sync/{user_id}", response_model=DailyStepRead)
async def sync_user(user_id: uuid.UUID, services: Services) -> Any:
    return await services.scheduler.sync_user(user_id)


@router.get("/sync-history/{user_id}", response_model=SyncHistoryResponse)
async def sync_history(
    user_id: uuid.UUID,
    services: Services,
    days: int = Query(default=7, ge=0),
) -> Any:
    """Backfill the last ``days`` closed days (capped server-side)."""
    result = await services.scheduler.backfill_user(user_id, days)
    return {"synced": result.synced, "records": result.records}


@router.get("/{user_id}", response_model=list[DailyStepRead])
async def list_steps(user_id: uuid.UUID, services: Services) -> Any:
    return await services.steps.list_by_user(user_id)
