"""Error kinds surfaced by the step synchronization engine.

Every failure the engine reports is a ``StepSyncError`` subclass carrying a
stable ``kind`` slug (used in logs and API responses) and the HTTP status the
API layer maps it to.  Third-party exceptions (httpx, asyncpg) are translated
into these at the module boundary where they occur.
"""

from __future__ import annotations

from uuid import UUID


class StepSyncError(Exception):
    """Base class for every engine failure."""

    kind: str = "step_sync_error"
    http_status: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Lookup / credential errors
# ---------------------------------------------------------------------------


class UserNotFoundError(StepSyncError):
    kind = "user_not_found"
    http_status = 404

    def __init__(self, user_id: UUID) -> None:
        super().__init__(f"User with ID {user_id} not found")
        self.user_id = user_id


class NoCredentialsError(StepSyncError):
    """The user has never linked Google Fit (no access token)."""

    kind = "no_credentials"
    http_status = 404

    def __init__(self, user_id: UUID) -> None:
        super().__init__(f"User {user_id} does not have a Google Fit access token")
        self.user_id = user_id


class NoRefreshTokenError(StepSyncError):
    """Refresh needed but no refresh token stored. Requires re-authentication."""

    kind = "no_refresh_token"
    http_status = 401

    def __init__(self, user_id: UUID) -> None:
        super().__init__(
            f"No refresh token available for user {user_id}. "
            "Please re-authenticate via Google."
        )
        self.user_id = user_id


class RefreshRevokedError(StepSyncError):
    """The token endpoint answered ``invalid_grant``. Terminal until re-auth."""

    kind = "refresh_revoked"
    http_status = 401

    def __init__(self, user_id: UUID) -> None:
        super().__init__(
            f"Refresh token for user {user_id} is invalid or revoked. "
            "Please log in again via Google."
        )
        self.user_id = user_id


class RefreshFailedError(StepSyncError):
    """Transient refresh failure; retried on the next scheduled run."""

    kind = "refresh_failed"
    http_status = 401


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderUnauthorizedError(StepSyncError):
    """HTTP 401 from the aggregate endpoint. Retriable only after a refresh."""

    kind = "unauthorized"
    http_status = 401

    def __init__(self, message: str = "Google Fit token expired or invalid") -> None:
        super().__init__(message)


class ProviderError(StepSyncError):
    """Any non-2xx provider response other than 401."""

    kind = "provider_error"
    http_status = 502

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"Google Fit API error ({status}): {message}")
        self.status = status
        self.provider_message = message


class ProviderTransportError(StepSyncError):
    """Network failure or deadline exceeded talking to the provider."""

    kind = "transport_error"
    http_status = 503


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(StepSyncError):
    """Database failure. The enclosing transaction has been rolled back."""

    kind = "storage_error"
    http_status = 500
