"""Nightly and on-demand step sync scheduling.

Workflow of a fleet sync:
1. Enumerate all users
2. Skip users without an access token
3. Sync yesterday for the rest, at most ``max_concurrent`` at a time
4. Log each failure with user id, day and error kind; never abort the batch

The nightly loop fires once per day at 00:00 in the configured zone.
Cancelling the loop (``stop()``) cancels an in-progress batch; a cancelled
sync never writes because the upsert only runs after a successful fetch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Callable
from uuid import UUID
from zoneinfo import ZoneInfo

from stepsync.fitness.base import BackfillResult, DailyStepRecord, User, utc_now
from stepsync.fitness.config_loader import SyncConfig, get_sync_config
from stepsync.fitness.errors import StepSyncError
from stepsync.fitness.stores import CredentialStore
from stepsync.fitness.sync.engine import SyncEngine

logger = logging.getLogger("stepsync.fitness.sync.scheduler")


def next_midnight(now: datetime, zone: tzinfo) -> datetime:
    """Return the next 00:00 in ``zone`` strictly after ``now`` (aware, UTC)."""
    local = now.astimezone(zone)
    tomorrow = local.date() + timedelta(days=1)
    midnight = datetime.combine(tomorrow, time.min, tzinfo=zone)
    return midnight.astimezone(ZoneInfo("UTC"))


@dataclass
class UserSyncResult:
    """Outcome of one user's sync within a fleet run.

    Attributes:
        user_id: Internal user UUID.
        status:  'success', 'skipped' or 'error'.
        record:  The written record when status == 'success'.
        error:   Error kind slug when status == 'error'.
        message: Human-readable error message.
    """

    user_id: UUID
    status: str
    record: DailyStepRecord | None = None
    error: str | None = None
    message: str | None = None


@dataclass
class FleetSyncReport:
    """Summary of a fleet sync run."""

    day: date
    started_at: datetime
    finished_at: datetime | None = None
    results: list[UserSyncResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def succeeded(self) -> int:
        return self.count("success")

    @property
    def skipped(self) -> int:
        return self.count("skipped")

    @property
    def failed(self) -> int:
        return self.count("error")


class StepSyncScheduler:
    """Run the nightly fleet sync and service on-demand sync requests.

    Usage::

        scheduler = StepSyncScheduler(engine, store, timezone=ZoneInfo("UTC"))
        scheduler.start()                 # nightly loop in the background
        ack = scheduler.trigger_fleet_sync()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        engine: SyncEngine,
        users: CredentialStore,
        timezone: tzinfo | None = None,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._users = users
        self._timezone = timezone or ZoneInfo("UTC")
        self._config = config or get_sync_config()
        self._clock = clock
        self._nightly_task: asyncio.Task | None = None
        self._fleet_task: asyncio.Task | None = None
        self.last_report: FleetSyncReport | None = None

    # ------------------------------------------------------------------
    # Fleet sync
    # ------------------------------------------------------------------

    async def run_fleet_sync(self, day: date | None = None) -> FleetSyncReport:
        """Sync ``day`` (default yesterday) for every eligible user.

        Per-user failures are recorded in the report and logged; they never
        abort the batch.
        """
        report = FleetSyncReport(
            day=day or self._engine.today() - timedelta(days=1),
            started_at=self._clock(),
        )
        logger.info("Starting daily step sync for all users (day=%s)", report.day)

        users = await self._users.list_users()
        semaphore = asyncio.Semaphore(self._config.scheduler.max_concurrent)
        report.results = list(
            await asyncio.gather(*(self._sync_user_in_batch(u, report.day, semaphore) for u in users))
        )

        report.finished_at = self._clock()
        self.last_report = report
        logger.info(
            "Daily step sync completed: %d synced, %d skipped, %d failed",
            report.succeeded, report.skipped, report.failed,
        )
        return report

    async def _sync_user_in_batch(
        self, user: User, day: date, semaphore: asyncio.Semaphore
    ) -> UserSyncResult:
        if not user.is_sync_eligible:
            logger.info("Skipping user %s - no Google Fit access token", user.id)
            return UserSyncResult(user_id=user.id, status="skipped", error="no_credentials")

        async with semaphore:
            try:
                record = await self._engine.sync_one(user.id, day)
            except StepSyncError as exc:
                logger.warning(
                    "Failed to sync steps for user %s [%s]: %s", user.id, exc.kind, exc
                )
                return UserSyncResult(
                    user_id=user.id, status="error", error=exc.kind, message=str(exc)
                )
            except Exception as exc:
                logger.exception("Unexpected error syncing steps for user %s", user.id)
                return UserSyncResult(
                    user_id=user.id, status="error", error="internal_error", message=str(exc)
                )

        return UserSyncResult(user_id=user.id, status="success", record=record)

    def trigger_fleet_sync(self) -> dict:
        """Start a fleet sync in the background and acknowledge immediately.

        A request that arrives while a fleet sync is running joins that run.
        """
        now = self._clock()
        if self._fleet_task is not None and not self._fleet_task.done():
            logger.info("Fleet sync already running; not starting another")
            return {"message": "Step sync already in progress", "timestamp": now.isoformat()}

        self._fleet_task = asyncio.create_task(self.run_fleet_sync(), name="fleet-step-sync")
        self._fleet_task.add_done_callback(self._log_fleet_failure)
        return {"message": "Step sync initiated for all users", "timestamp": now.isoformat()}

    @staticmethod
    def _log_fleet_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("Fleet sync cancelled")
        elif task.exception() is not None:
            logger.error("Daily step sync failed: %s", task.exception())

    # ------------------------------------------------------------------
    # On-demand single user
    # ------------------------------------------------------------------

    async def sync_user(self, user_id: UUID) -> DailyStepRecord:
        """Sync yesterday for one user; errors propagate to the caller."""
        return await self._engine.sync_yesterday(user_id)

    async def backfill_user(self, user_id: UUID, days: int | None = None) -> BackfillResult:
        """Backfill ``days`` closed days (default and upper bound from config)."""
        bounded = self._config.backfill.clamp(days)
        if days is not None and bounded != days:
            logger.info("Backfill for user %s clamped from %d to %d days", user_id, days, bounded)
        return await self._engine.sync_backfill(user_id, bounded)

    # ------------------------------------------------------------------
    # Nightly loop
    # ------------------------------------------------------------------

    def next_run_at(self, after: datetime | None = None) -> datetime:
        """Next 00:00 in the scheduler zone after now, or after ``after`` if later."""
        now = self._clock()
        return next_midnight(max(now, after) if after else now, self._timezone)

    async def _nightly_loop(self) -> None:
        fired: datetime | None = None
        while True:
            # Anchored on the previous target so an early wake-up cannot fire twice.
            target = self.next_run_at(after=fired)
            delay = max((target - self._clock()).total_seconds(), 0.0)
            logger.info("Next nightly step sync at %s (in %.0f seconds)", target.isoformat(), delay)
            await asyncio.sleep(delay)
            fired = target
            try:
                await self.run_fleet_sync(target.astimezone(self._timezone).date() - timedelta(days=1))
            except Exception:
                logger.exception("Daily step sync failed")

    def start(self) -> None:
        """Start the nightly loop. Idempotent."""
        if self._nightly_task is None or self._nightly_task.done():
            self._nightly_task = asyncio.create_task(self._nightly_loop(), name="nightly-step-sync")
            logger.info("Nightly step sync scheduled at 00:00 %s", self._timezone)

    @property
    def running(self) -> bool:
        return self._nightly_task is not None and not self._nightly_task.done()

    async def stop(self) -> None:
        """Cancel the nightly loop and any in-progress fleet sync."""
        tasks = [t for t in (self._nightly_task, self._fleet_task) if t and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._nightly_task = None
        self._fleet_task = None
        logger.info("Step sync scheduler stopped")
