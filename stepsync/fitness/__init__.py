"""Google Fit step synchronization engine.

Subpackages:
    sync/  — Sync engine, nightly/on-demand scheduler, refresh singleflight

Core modules:
    base           — Canonical dataclasses (User, DailyStepRecord, Credentials)
    errors         — StepSyncError hierarchy
    config_loader  — Load/validate/hot-reload sync_config.yaml
    google_fit     — Google Fit aggregate + token endpoint client
    credentials    — CredentialManager (valid tokens, refresh, account linking)
    stores         — Store interfaces and the in-memory backend
    postgres_store — asyncpg backend
"""

from stepsync.fitness.base import (
    BackfillResult,
    CredentialState,
    Credentials,
    DailyStepRecord,
    OAuthTokens,
    User,
)
from stepsync.fitness.config_loader import SyncConfig, get_sync_config
from stepsync.fitness.errors import StepSyncError

__all__ = [
    "BackfillResult",
    "CredentialState",
    "Credentials",
    "DailyStepRecord",
    "OAuthTokens",
    "User",
    "StepSyncError",
    "SyncConfig",
    "get_sync_config",
]
