"""Canonical data models for the step synchronization engine.

These dataclasses are what the stores return and the engine passes around.
The API layer converts them to Pydantic response models in ``stepsync.models``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from uuid import UUID


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def midnight_utc(day: date | datetime) -> datetime:
    """Return 00:00:00 UTC of the calendar day ``day`` falls on.

    Aware datetimes are converted to UTC first; naive ones are taken as UTC.
    """
    if isinstance(day, datetime):
        if day.tzinfo is not None:
            day = day.astimezone(timezone.utc)
        day = day.date()
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def to_epoch_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def from_epoch_millis(millis: int | None) -> datetime | None:
    if millis is None:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """Token set returned by the Google token endpoint.

    Attributes:
        access_token:  Bearer token for Fitness API calls.
        refresh_token: Only present on initial consent; None on refresh.
        expires_at:    UTC datetime when ``access_token`` expires.
        token_type:    Token type, typically "Bearer".
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"


@dataclass(frozen=True)
class Credentials:
    """In-memory projection of a user's provider credentials."""

    user_id: UUID
    access_token: str | None
    refresh_token: str | None
    token_expires_at: datetime | None

    def needs_refresh(self, now: datetime, skew: timedelta) -> bool:
        """True when the token expiry is unknown or falls within ``skew`` of ``now``."""
        if self.token_expires_at is None:
            return True
        return self.token_expires_at < now + skew


class CredentialState(str, enum.Enum):
    """Per-user credential lifecycle state (never persisted)."""

    HEALTHY = "healthy"
    STALE = "stale"
    REFRESHING = "refreshing"
    BROKEN = "broken"


# ---------------------------------------------------------------------------
# Persisted rows
# ---------------------------------------------------------------------------


@dataclass
class User:
    """A leaderboard participant and their Google credentials.

    ``total_steps`` is a denormalized sum of the user's DailyStepRecords and is
    only ever changed by the store's upsert and recompute paths.
    """

    id: UUID
    email: str
    name: str
    provider_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    total_steps: int = 0

    @property
    def credentials(self) -> Credentials:
        return Credentials(
            user_id=self.id,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            token_expires_at=self.token_expires_at,
        )

    @property
    def is_sync_eligible(self) -> bool:
        return bool(self.access_token)


@dataclass
class DailyStepRecord:
    """One user's step count for one UTC calendar day. Keyed by (user_id, date)."""

    user_id: UUID
    date: date
    steps: int


@dataclass
class BackfillResult:
    """Outcome of a multi-day backfill."""

    records: list[DailyStepRecord] = field(default_factory=list)

    @property
    def synced(self) -> int:
        return len(self.records)
