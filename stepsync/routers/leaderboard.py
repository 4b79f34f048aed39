"""Leaderboard: users ranked by total steps."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from stepsync.dependencies import Services
from stepsync.models.users import LeaderboardEntry

router = APIRouter(prefix="/leaderboard", tags=["leaderboard"])


@router.get("", response_model=list[LeaderboardEntry])
async def get_leaderboard(
    services: Services,
    limit: int | None = Query(default=None, ge=1, le=1000),
) -> Any:
    return await services.steps.leaderboard(limit)
