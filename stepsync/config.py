"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "StepSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Google OAuth client ---
    google_client_id: str = ""
    google_client_secret: str = ""  # server-side only

    # --- Storage ---
    database_url: str = ""  # postgres connection string for asyncpg
    storage_backend: str = "postgres"  # postgres | memory

    # --- Scheduler ---
    scheduler_enabled: bool = True
    scheduler_timezone: str = "UTC"  # IANA zone; nightly sync fires at 00:00 here

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
