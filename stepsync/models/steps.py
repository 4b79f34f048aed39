"""Pydantic models for daily step records and sync responses."""

from __future__ import annotations

import datetime as dt
import uuid

from pydantic import Field

from stepsync.models.base import StepSyncBase


class DailyStepRead(StepSyncBase):
    user_id: uuid.UUID
    date: dt.date
    steps: int = Field(ge=0)


class SyncAllResponse(StepSyncBase):
    """Acknowledgement returned before the fleet sync runs."""

    message: str
    timestamp: dt.datetime


class SyncHistoryResponse(StepSyncBase):
    synced: int
    records: list[DailyStepRead]
