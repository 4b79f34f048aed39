"""Sync engine: fetch one user's steps for one day and persist them.

A sync is token → fetch → upsert, in that order, so nothing is written
unless the fetch succeeded.  Re-running a sync with an unchanged provider
count leaves ``total_steps`` untouched (the upsert delta is 0).

Only closed days are synced: "yesterday" is the canonical nightly unit,
because today's bucket is still accumulating.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable
from uuid import UUID
from zoneinfo import ZoneInfo

from stepsync.fitness.base import (
    BackfillResult,
    DailyStepRecord,
    midnight_utc,
    to_epoch_millis,
    utc_now,
)
from stepsync.fitness.credentials import CredentialManager
from stepsync.fitness.errors import (
    NoCredentialsError,
    ProviderUnauthorizedError,
    StepSyncError,
    UserNotFoundError,
)
from stepsync.fitness.google_fit import GoogleFitClient
from stepsync.fitness.stores import CredentialStore, DailyStepsStore

logger = logging.getLogger("stepsync.fitness.sync.engine")

DAY = timedelta(days=1)


class SyncEngine:
    """Compose credential lookup, the Google Fit fetch and the daily upsert."""

    def __init__(
        self,
        credentials: CredentialManager,
        client: GoogleFitClient,
        users: CredentialStore,
        steps: DailyStepsStore,
        timezone: tzinfo | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Args:
            credentials: Token source for each user.
            client:      Google Fit client.
            users:       Read side of the credential store.
            steps:       Daily record store.
            timezone:    Zone that decides what "today" is (default UTC).
            clock:       Returns the current aware UTC datetime.
        """
        self._credentials = credentials
        self._client = client
        self._users = users
        self._steps = steps
        self._timezone = timezone or ZoneInfo("UTC")
        self._clock = clock

    def today(self) -> date:
        return self._clock().astimezone(self._timezone).date()

    async def sync_one(self, user_id: UUID, day: date) -> DailyStepRecord:
        """Sync ``day`` (UTC calendar day) for one user.

        A 401 from Google forces one refresh and one retry; a second 401 is
        raised to the caller.

        Raises:
            StepSyncError: Any engine failure; nothing was written.
        """
        start = midnight_utc(day)
        start_ms = to_epoch_millis(start)
        end_ms = to_epoch_millis(start + DAY)

        token = await self._credentials.get_valid_token(user_id)
        try:
            steps = await self._client.fetch_steps(token, start_ms, end_ms)
        except ProviderUnauthorizedError:
            logger.info("Google Fit rejected token for user %s, refreshing and retrying", user_id)
            token = await self._credentials.refresh(user_id, stale_token=token)
            steps = await self._client.fetch_steps(token, start_ms, end_ms)

        record = await self._steps.upsert_daily(user_id, start, steps)
        logger.info("Synced %d steps for user %s on %s", steps, user_id, record.date)
        return record

    async def sync_yesterday(self, user_id: UUID) -> DailyStepRecord:
        return await self.sync_one(user_id, self.today() - DAY)

    async def sync_backfill(self, user_id: UUID, days: int) -> BackfillResult:
        """Sync each of the ``days`` closed days before today, newest first.

        A failure on one day is logged and the next day is attempted.

        Raises:
            UserNotFoundError:  Unknown user (checked before any fetch).
            NoCredentialsError: The user has no access token.
        """
        result = BackfillResult()
        if days <= 0:
            return result

        user = await self._users.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if not user.is_sync_eligible:
            raise NoCredentialsError(user_id)

        today = self.today()
        for i in range(1, days + 1):
            day = today - i * DAY
            try:
                result.records.append(await self.sync_one(user_id, day))
            except StepSyncError as exc:
                logger.warning(
                    "Backfill failed for user %s on %s [%s]: %s",
                    user_id, day, exc.kind, exc,
                )

        logger.info("Backfill for user %s: %d/%d days synced", user_id, result.synced, days)
        return result
