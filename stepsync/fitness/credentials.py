"""Credential manager: hands out live Google access tokens.

Lifecycle of a user's credentials (never persisted as a flag)::

    HEALTHY ──expiry within skew──▶ STALE ──get_valid_token──▶ REFRESHING
    REFRESHING ──success──▶ HEALTHY
    REFRESHING ──invalid_grant / no refresh token──▶ BROKEN
    BROKEN ──link_google_account (re-login)──▶ HEALTHY

Refreshes are coalesced per user: while one refresh POST is in flight every
other caller for that user awaits its result.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from stepsync.fitness.base import CredentialState, User, utc_now
from stepsync.fitness.config_loader import SyncConfig, get_sync_config
from stepsync.fitness.errors import (
    NoCredentialsError,
    NoRefreshTokenError,
    RefreshFailedError,
    RefreshRevokedError,
    UserNotFoundError,
)
from stepsync.fitness.google_fit import GoogleFitClient, TokenEndpointError
from stepsync.fitness.stores import CredentialStore
from stepsync.fitness.sync.singleflight import Singleflight

logger = logging.getLogger("stepsync.fitness.credentials")


class CredentialManager:
    """Resolve, refresh and link per-user Google credentials."""

    def __init__(
        self,
        store: CredentialStore,
        client: GoogleFitClient,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._client = client
        self._config = config or get_sync_config()
        self._clock = clock
        self._refreshes: Singleflight[str] = Singleflight()

    async def _load(self, user_id: UUID) -> User:
        user = await self._store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def get_valid_token(self, user_id: UUID) -> str:
        """Return an access token that stays valid for at least the skew window.

        Raises:
            UserNotFoundError:   Unknown user.
            NoCredentialsError:  The user has no access token.
            NoRefreshTokenError, RefreshRevokedError, RefreshFailedError:
                                 A needed refresh failed.
        """
        user = await self._load(user_id)
        if not user.access_token:
            raise NoCredentialsError(user_id)

        if user.credentials.needs_refresh(self._clock(), self._config.credentials.refresh_skew):
            logger.info(
                "Token expired, expiring soon, or no expiry set for user %s, refreshing",
                user_id,
            )
            return await self.refresh(user_id, stale_token=user.access_token)
        return user.access_token

    async def refresh(self, user_id: UUID, stale_token: str | None = None) -> str:
        """Mint a new access token from the stored refresh token and persist it.

        Concurrent calls for the same user share one token-endpoint POST.

        Args:
            user_id:     Internal user UUID.
            stale_token: The access token the caller found unusable.  If the
                         store already holds a different, still-fresh token
                         (another caller refreshed in the meantime), that
                         token is returned without a POST.
        """
        return await self._refreshes.do(user_id, lambda: self._refresh(user_id, stale_token))

    async def _refresh(self, user_id: UUID, stale_token: str | None) -> str:
        user = await self._load(user_id)
        if (
            stale_token is not None
            and user.access_token
            and user.access_token != stale_token
            and not user.credentials.needs_refresh(self._clock(), self._config.credentials.refresh_skew)
        ):
            logger.debug("Token for user %s already refreshed by another caller", user_id)
            return user.access_token
        if not user.refresh_token:
            logger.error("No refresh token for user %s. User needs to re-authenticate.", user_id)
            raise NoRefreshTokenError(user_id)

        logger.info("Refreshing access token for user %s", user_id)
        try:
            tokens = await self._client.refresh_access_token(user.refresh_token)
        except TokenEndpointError as exc:
            if exc.is_invalid_grant:
                logger.error("Refresh token revoked for user %s: %s", user_id, exc.description)
                raise RefreshRevokedError(user_id) from exc
            logger.error("Failed to refresh token for user %s: %s", user_id, exc.description)
            raise RefreshFailedError(f"Failed to refresh token: {exc.description}") from exc
        except RefreshFailedError as exc:
            logger.error("Failed to refresh token for user %s: %s", user_id, exc)
            raise

        # Google normally omits refresh_token on refresh; keep the stored one then.
        await self._store.save_credentials(
            user_id,
            access_token=tokens.access_token,
            token_expires_at=tokens.expires_at,
            refresh_token=tokens.refresh_token,
        )
        logger.info("Successfully refreshed token for user %s", user_id)
        return tokens.access_token

    async def link_google_account(
        self,
        provider_id: str,
        email: str,
        name: str,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: int | None = None,
    ) -> User:
        """Store credentials obtained by the external Google login flow.

        Matches the user by Google account id, then by email (linking the
        account), and otherwise creates one.  A None ``refresh_token`` never
        overwrites a stored one: Google only returns it on first consent.
        """
        ttl = expires_in if expires_in and expires_in > 0 else self._config.credentials.default_expires_in
        expires_at = self._clock() + timedelta(seconds=ttl)

        user = await self._store.find_by_provider_id(provider_id)
        if user is not None:
            if refresh_token:
                logger.info("Updated refresh token for user %s", user.id)
            return await self._store.save_credentials(
                user.id,
                access_token=access_token,
                token_expires_at=expires_at,
                refresh_token=refresh_token or None,
            )

        user = await self._store.find_by_email(email)
        if user is not None:
            logger.info("Linked Google account to existing user %s", user.id)
            return await self._store.save_credentials(
                user.id,
                access_token=access_token,
                token_expires_at=expires_at,
                refresh_token=refresh_token or None,
                provider_id=provider_id,
            )

        user = await self._store.create_user(
            email=email,
            name=name,
            provider_id=provider_id,
            access_token=access_token,
            refresh_token=refresh_token or None,
            token_expires_at=expires_at,
        )
        logger.info("Created new user %s with Google account", user.id)
        return user

    async def state(self, user_id: UUID) -> CredentialState:
        """Classify the user's credentials. BROKEN is only detectable as "no refresh token"."""
        if self._refreshes.in_flight(user_id):
            return CredentialState.REFRESHING
        user = await self._load(user_id)
        stale = not user.access_token or user.credentials.needs_refresh(
            self._clock(), self._config.credentials.refresh_skew
        )
        if stale and not user.refresh_token:
            return CredentialState.BROKEN
        return CredentialState.STALE if stale else CredentialState.HEALTHY
