"""Google Fit REST client.

Stateless wrapper around two Google endpoints:

    POST {aggregate_url}   — dataset:aggregate, one 24 h bucket per call
    POST {token_url}       — OAuth2 refresh_token grant

The client performs no retries.  httpx failures are translated into the
engine's error kinds here so callers never see an httpx exception.

Environment variables:
    GOOGLE_CLIENT_ID      — OAuth2 client ID
    GOOGLE_CLIENT_SECRET  — OAuth2 client secret
"""

from __future__ import annotations

import logging
import os
from datetime import timedelta
from typing import Any, Callable

import httpx

from stepsync.fitness.base import OAuthTokens, utc_now
from stepsync.fitness.config_loader import SyncConfig, get_sync_config
from stepsync.fitness.errors import (
    ProviderError,
    ProviderTransportError,
    ProviderUnauthorizedError,
    RefreshFailedError,
)

logger = logging.getLogger("stepsync.fitness.google_fit")


class TokenEndpointError(Exception):
    """The token endpoint rejected a refresh. ``error`` is Google's error code."""

    def __init__(self, error: str | None, description: str) -> None:
        super().__init__(description)
        self.error = error
        self.description = description

    @property
    def is_invalid_grant(self) -> bool:
        return self.error == "invalid_grant"


def parse_step_total(payload: Any) -> int:
    """Sum ``bucket[*].dataset[*].point[*].value[0].intVal``.

    Missing or malformed fields at any level contribute 0, so an empty
    response (no buckets, empty dataset, no ``value``) yields 0.
    """
    if not isinstance(payload, dict):
        return 0

    total = 0
    for bucket in payload.get("bucket") or []:
        if not isinstance(bucket, dict):
            continue
        for dataset in bucket.get("dataset") or []:
            if not isinstance(dataset, dict):
                continue
            for point in dataset.get("point") or []:
                if not isinstance(point, dict):
                    continue
                values = point.get("value") or []
                if not values or not isinstance(values[0], dict):
                    continue
                try:
                    total += int(values[0].get("intVal") or 0)
                except (TypeError, ValueError):
                    continue
    return max(total, 0)


def _error_message(response: httpx.Response) -> str:
    """Best-effort extraction of Google's error message from a response body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase or "Unknown error"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or "Unknown error")
        if error:
            return str(body.get("error_description") or error)
    return "Unknown error"


class GoogleFitClient:
    """Google Fit aggregate + token endpoint client.

    Safe to share between concurrent tasks: all per-call state lives on the
    stack, and an injected ``httpx.AsyncClient`` is itself concurrency-safe.
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        config: SyncConfig | None = None,
        clock: Callable[[], Any] = utc_now,
    ) -> None:
        """Initialize the client.

        Args:
            client_id:     OAuth2 client ID (GOOGLE_CLIENT_ID env var).
            client_secret: OAuth2 client secret (GOOGLE_CLIENT_SECRET env var).
            http_client:   Optional pre-configured httpx client (shared pool, tests).
            config:        Engine config; defaults to the bundled sync_config.yaml.
            clock:         Returns the current aware UTC datetime.
        """
        self._client_id = client_id or os.environ.get("GOOGLE_CLIENT_ID", "")
        self._client_secret = client_secret or os.environ.get("GOOGLE_CLIENT_SECRET", "")
        self._http_client = http_client
        self._config = config or get_sync_config()
        self._clock = clock

    # ------------------------------------------------------------------
    # Aggregate endpoint
    # ------------------------------------------------------------------

    def build_aggregate_request(self, start_millis: int, end_millis: int) -> dict:
        """Request body for a single-bucket step aggregate over ``[start, end)``."""
        provider = self._config.provider
        return {
            "aggregateBy": [{"dataTypeName": provider.data_type_name}],
            "bucketByTime": {"durationMillis": provider.bucket_duration_ms},
            "startTimeMillis": start_millis,
            "endTimeMillis": end_millis,
        }

    async def fetch_steps(self, access_token: str, start_millis: int, end_millis: int) -> int:
        """Return the step count Google Fit reports for ``[start_millis, end_millis)``.

        Raises:
            ProviderUnauthorizedError: HTTP 401; refresh the token and retry.
            ProviderError:             Any other non-2xx response.
            ProviderTransportError:    Network failure or timeout.
        """
        provider = self._config.provider
        response = await self._post(
            provider.aggregate_url,
            timeout=provider.fetch_timeout_s,
            json=self.build_aggregate_request(start_millis, end_millis),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
        )

        if response.status_code == 401:
            raise ProviderUnauthorizedError()
        if not response.is_success:
            raise ProviderError(response.status_code, _error_message(response))

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(response.status_code, f"Malformed JSON: {exc}") from exc

        steps = parse_step_total(payload)
        logger.debug("Google Fit: %d steps in [%d, %d)", steps, start_millis, end_millis)
        return steps

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new access token.

        The returned ``expires_at`` is always in the future: a missing or
        non-positive ``expires_in`` falls back to the configured default.

        Raises:
            TokenEndpointError: Google answered with an OAuth error body.
            RefreshFailedError: Transport failure or an unusable response.
        """
        provider = self._config.provider
        try:
            response = await self._post(
                provider.token_url,
                timeout=provider.refresh_timeout_s,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except ProviderTransportError as exc:
            raise RefreshFailedError(f"Failed to refresh token: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.is_success or "error" in data:
            error = data.get("error")
            description = str(
                data.get("error_description") or error or f"HTTP {response.status_code}"
            )
            raise TokenEndpointError(error if isinstance(error, str) else None, description)

        access_token = data.get("access_token")
        if not access_token:
            raise RefreshFailedError("Failed to refresh token: response has no access_token")

        default_ttl = self._config.credentials.default_expires_in
        try:
            expires_in = int(data.get("expires_in") or default_ttl)
        except (TypeError, ValueError):
            expires_in = default_ttl
        if expires_in <= 0:
            expires_in = default_ttl

        return OAuthTokens(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=self._clock() + timedelta(seconds=expires_in),
            token_type=data.get("token_type", "Bearer"),
        )

    # ------------------------------------------------------------------
    # Private HTTP helper
    # ------------------------------------------------------------------

    async def _post(self, url: str, timeout: float, **kwargs: Any) -> httpx.Response:
        """POST with a per-call deadline, translating httpx failures.

        Raises:
            ProviderTransportError: On connection errors and timeouts.
        """
        try:
            if self._http_client:
                return await self._http_client.post(url, timeout=timeout, **kwargs)
            async with httpx.AsyncClient() as client:
                return await client.post(url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderTransportError(f"Timed out after {timeout}s calling {url}") from exc
        except httpx.TransportError as exc:
            raise ProviderTransportError(f"Failed to reach {url}: {exc}") from exc
