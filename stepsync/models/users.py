"""Pydantic models for leaderboard entries."""

from __future__ import annotations

import uuid

from pydantic import Field

from stepsync.models.base import StepSyncBase


class LeaderboardEntry(StepSyncBase):
    """Public projection of a user. Never exposes tokens."""

    id: uuid.UUID
    name: str
    total_steps: int = Field(ge=0)
