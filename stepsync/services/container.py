"""Wire the sync engine's collaborators together.

One ``StepSyncServices`` bundle is built per process at startup and hung off
``app.state``; route handlers reach it through ``stepsync.dependencies``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from zoneinfo import ZoneInfo

import httpx

from stepsync.config import Settings, get_settings
from stepsync.fitness.config_loader import SyncConfig, get_sync_config
from stepsync.fitness.credentials import CredentialManager
from stepsync.fitness.google_fit import GoogleFitClient
from stepsync.fitness.postgres_store import PostgresStepStore
from stepsync.fitness.stores import CredentialStore, DailyStepsStore, InMemoryStepStore, StepStore
from stepsync.fitness.sync.engine import SyncEngine
from stepsync.fitness.sync.scheduler import StepSyncScheduler

logger = logging.getLogger("stepsync.services.container")


@dataclass
class StepSyncServices:
    """Everything a request handler or the nightly job needs."""

    users: CredentialStore
    steps: DailyStepsStore
    client: GoogleFitClient
    credentials: CredentialManager
    engine: SyncEngine
    scheduler: StepSyncScheduler
    http_client: httpx.AsyncClient | None = None

    async def aclose(self) -> None:
        await self.scheduler.stop()
        if self.http_client is not None:
            await self.http_client.aclose()


def build_store(settings: Settings) -> StepStore:
    if settings.storage_backend == "memory":
        logger.warning("Using in-memory storage; data is lost on restart")
        return InMemoryStepStore()
    if settings.storage_backend == "postgres":
        return PostgresStepStore()
    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.storage_backend!r}")


def build_services(
    settings: Settings | None = None,
    store: StepStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    config: SyncConfig | None = None,
) -> StepSyncServices:
    """Build the service bundle.

    Args:
        settings:    Environment settings (defaults to ``get_settings()``).
        store:       Backend implementing both store interfaces; chosen from
                     ``STORAGE_BACKEND`` when omitted.
        http_client: Shared httpx client; one is created (and owned) if omitted.
        config:      Engine tuning (defaults to the bundled YAML).
    """
    s = settings or get_settings()
    cfg = config or get_sync_config()
    zone = ZoneInfo(s.scheduler_timezone)
    backend = store or build_store(s)
    owned_client = http_client is None
    http = http_client or httpx.AsyncClient()

    client = GoogleFitClient(
        client_id=s.google_client_id,
        client_secret=s.google_client_secret,
        http_client=http,
        config=cfg,
    )
    credentials = CredentialManager(backend, client, config=cfg)
    engine = SyncEngine(credentials, client, backend, backend, timezone=zone)
    scheduler = StepSyncScheduler(engine, backend, timezone=zone, config=cfg)

    return StepSyncServices(
        users=backend,
        steps=backend,
        client=client,
        credentials=credentials,
        engine=engine,
        scheduler=scheduler,
        http_client=http if owned_client else None,
    )
