"""Load, validate, and hot-reload the StepSync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an operator update without a restart.

Usage::

    from stepsync.fitness.config_loader import get_sync_config

    config = get_sync_config()
    config.provider.fetch_timeout_s        # 15.0
    config.credentials.refresh_skew        # timedelta(minutes=5)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("stepsync.fitness.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ProviderConfig:
    """Google Fit endpoints and per-call deadlines."""

    aggregate_url: str
    token_url: str
    data_type_name: str
    bucket_duration_ms: int
    fetch_timeout_s: float
    refresh_timeout_s: float


@dataclass
class CredentialsConfig:
    """Access-token lifecycle settings."""

    refresh_skew_seconds: int
    default_expires_in: int

    @property
    def refresh_skew(self) -> timedelta:
        return timedelta(seconds=self.refresh_skew_seconds)


@dataclass
class BackfillConfig:
    """On-demand backfill bounds."""

    default_days: int
    max_days: int

    def clamp(self, days: int | None) -> int:
        """Return ``days`` bounded to ``[0, max_days]`` (None → default)."""
        if days is None:
            days = self.default_days
        return max(0, min(days, self.max_days))


@dataclass
class SchedulerConfig:
    """Fleet sync fan-out."""

    max_concurrent: int


@dataclass
class SyncConfig:
    """Complete, validated engine configuration.

    This is the single in-memory representation of sync_config.yaml.

    Attributes:
        version:     Config schema version string.
        provider:    Google Fit endpoints and timeouts.
        credentials: Token refresh skew and default lifetime.
        backfill:    Backfill default and upper bound.
        scheduler:   Fleet sync concurrency.
    """

    version: str
    provider: ProviderConfig
    credentials: CredentialsConfig
    backfill: BackfillConfig
    scheduler: SchedulerConfig
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Applies defaults for optional fields and collects every problem before
    raising, so an operator sees the whole list at once.

    Raises:
        ConfigValidationError: If any value is missing or invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, path: str, default: Any, cast: type) -> Any:
        value = section.get(key, default)
        try:
            value = cast(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return default
        if value <= 0:
            errors.append(f"{path}.{key} must be positive, got {value}")
        return value

    def _section(key: str) -> dict:
        section = raw.get(key) or {}
        if not isinstance(section, dict):
            errors.append(f"'{key}' must be a mapping")
            return {}
        return section

    version = str(raw.get("version", "1.0"))

    # ── Provider ──
    pr_raw = _section("provider")
    provider = ProviderConfig(
        aggregate_url=pr_raw.get(
            "aggregate_url",
            "https://www.googleapis.com/fitness/v1/users/me/dataset:aggregate",
        ),
        token_url=pr_raw.get("token_url", "https://oauth2.googleapis.com/token"),
        data_type_name=pr_raw.get("data_type_name", "com.google.step_count.delta"),
        bucket_duration_ms=_number(pr_raw, "bucket_duration_ms", "provider", 86_400_000, int),
        fetch_timeout_s=_number(pr_raw, "fetch_timeout_s", "provider", 15.0, float),
        refresh_timeout_s=_number(pr_raw, "refresh_timeout_s", "provider", 10.0, float),
    )
    for key in ("aggregate_url", "token_url"):
        url = getattr(provider, key)
        if not isinstance(url, str) or not url.startswith("https://"):
            errors.append(f"provider.{key} must be an https URL, got {url!r}")

    # ── Credentials ──
    cr_raw = _section("credentials")
    credentials = CredentialsConfig(
        refresh_skew_seconds=_number(cr_raw, "refresh_skew_seconds", "credentials", 300, int),
        default_expires_in=_number(cr_raw, "default_expires_in", "credentials", 3600, int),
    )

    # ── Backfill ──
    bf_raw = _section("backfill")
    backfill = BackfillConfig(
        default_days=_number(bf_raw, "default_days", "backfill", 7, int),
        max_days=_number(bf_raw, "max_days", "backfill", 30, int),
    )
    if backfill.default_days > backfill.max_days:
        errors.append(
            f"backfill.default_days ({backfill.default_days}) exceeds "
            f"backfill.max_days ({backfill.max_days})"
        )

    # ── Scheduler ──
    sc_raw = _section("scheduler")
    scheduler = SchedulerConfig(
        max_concurrent=_number(sc_raw, "max_concurrent", "scheduler", 16, int),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        provider=provider,
        credentials=credentials,
        backfill=backfill,
        scheduler=scheduler,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
