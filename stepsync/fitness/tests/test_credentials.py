"""Tests for the credential manager: token validity, refresh, linking."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta

import pytest

from stepsync.fitness.base import CredentialState
from stepsync.fitness.errors import (
    NoCredentialsError,
    NoRefreshTokenError,
    RefreshFailedError,
    RefreshRevokedError,
    UserNotFoundError,
)
from stepsync.fitness.tests.conftest import NOW, Stack


class TestGetValidToken:
    @pytest.mark.asyncio
    async def test_returns_stored_token_when_fresh(self, stack: Stack, make_user) -> None:
        user = await make_user()
        assert await stack.credentials.get_valid_token(user.id) == "valid-token"
        assert stack.google.token_calls == []

    @pytest.mark.asyncio
    async def test_refreshes_inside_five_minute_window(self, stack: Stack, make_user) -> None:
        user = await make_user(token_expires_at=NOW + timedelta(minutes=4, seconds=59))

        token = await stack.credentials.get_valid_token(user.id)

        assert token == "fresh-token-1"
        stored = await stack.store.get_user(user.id)
        assert stored.access_token == "fresh-token-1"
        assert stored.token_expires_at == NOW + timedelta(seconds=3599)

    @pytest.mark.asyncio
    async def test_token_just_outside_window_is_kept(self, stack: Stack, make_user) -> None:
        user = await make_user(token_expires_at=NOW + timedelta(minutes=5))
        assert await stack.credentials.get_valid_token(user.id) == "valid-token"

    @pytest.mark.asyncio
    async def test_unknown_expiry_is_treated_as_expired(self, stack: Stack, make_user) -> None:
        user = await make_user(token_expires_at=None)
        assert await stack.credentials.get_valid_token(user.id) == "fresh-token-1"
        assert len(stack.google.token_calls) == 1

    @pytest.mark.asyncio
    async def test_no_access_token(self, stack: Stack, make_user) -> None:
        user = await make_user(access_token=None)
        with pytest.raises(NoCredentialsError):
            await stack.credentials.get_valid_token(user.id)

    @pytest.mark.asyncio
    async def test_unknown_user(self, stack: Stack) -> None:
        with pytest.raises(UserNotFoundError):
            await stack.credentials.get_valid_token(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, stack: Stack, make_user) -> None:
        user = await make_user(token_expires_at=NOW - timedelta(minutes=1))
        stack.google.token_delay = 0.05

        tokens = await asyncio.gather(
            *(stack.credentials.get_valid_token(user.id) for _ in range(10))
        )

        assert len(stack.google.token_calls) == 1
        assert set(tokens) == {"fresh-token-1"}

    @pytest.mark.asyncio
    async def test_caller_with_stale_read_reuses_completed_refresh(
        self, stack: Stack, make_user, monkeypatch
    ) -> None:
        user = await make_user(token_expires_at=NOW - timedelta(minutes=1))
        stack.google.token_delay = 0.05
        read_user = stack.store.get_user
        reads = {"n": 0}

        async def slow_second_read(user_id):
            reads["n"] += 1
            snapshot = await read_user(user_id)
            if reads["n"] == 2:
                # Hold the pre-refresh snapshot until the first refresh has committed.
                await asyncio.sleep(0.2)
            return snapshot

        monkeypatch.setattr(stack.store, "get_user", slow_second_read)

        tokens = await asyncio.gather(
            stack.credentials.get_valid_token(user.id),
            stack.credentials.get_valid_token(user.id),
        )

        assert len(stack.google.token_calls) == 1
        assert tokens == ["fresh-token-1", "fresh-token-1"]


class TestRefresh:
    @pytest.mark.asyncio
    async def test_keeps_refresh_token_when_google_omits_it(self, stack: Stack, make_user) -> None:
        user = await make_user(refresh_token="long-lived")
        await stack.credentials.refresh(user.id)

        stored = await stack.store.get_user(user.id)
        assert stored.refresh_token == "long-lived"
        assert stack.google.token_calls[0]["refresh_token"] == "long-lived"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_stored(self, stack: Stack, make_user) -> None:
        user = await make_user(refresh_token="old")
        stack.google.token_body = {"access_token": "a2", "refresh_token": "new", "expires_in": 60}

        await stack.credentials.refresh(user.id)

        stored = await stack.store.get_user(user.id)
        assert stored.refresh_token == "new"
        assert stored.token_expires_at == NOW + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_expiry_is_always_after_write_instant(self, stack: Stack, make_user) -> None:
        user = await make_user()
        stack.google.token_body = {"access_token": "a2", "expires_in": 0}

        await stack.credentials.refresh(user.id)

        stored = await stack.store.get_user(user.id)
        assert stored.token_expires_at > NOW

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, stack: Stack, make_user) -> None:
        user = await make_user(refresh_token=None)
        with pytest.raises(NoRefreshTokenError):
            await stack.credentials.refresh(user.id)
        assert stack.google.token_calls == []

    @pytest.mark.asyncio
    async def test_invalid_grant_is_revoked(self, stack: Stack, make_user) -> None:
        user = await make_user()
        stack.google.token_status = 400
        stack.google.token_body = {"error": "invalid_grant"}

        with pytest.raises(RefreshRevokedError) as exc_info:
            await stack.credentials.refresh(user.id)
        assert exc_info.value.kind == "refresh_revoked"

        stored = await stack.store.get_user(user.id)
        assert stored.access_token == "valid-token"

    @pytest.mark.asyncio
    async def test_other_errors_are_transient_failures(self, stack: Stack, make_user) -> None:
        user = await make_user()
        stack.google.token_status = 503
        stack.google.token_body = {"error": "temporarily_unavailable"}

        with pytest.raises(RefreshFailedError) as exc_info:
            await stack.credentials.refresh(user.id)
        assert "temporarily_unavailable" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_failed_refresh_can_be_retried(self, stack: Stack, make_user) -> None:
        user = await make_user()
        stack.google.token_status = 500
        stack.google.token_body = {"error": "backend_error"}
        with pytest.raises(RefreshFailedError):
            await stack.credentials.refresh(user.id)

        stack.google.token_status = 200
        stack.google.token_body = None
        assert await stack.credentials.refresh(user.id) == "fresh-token-2"

    @pytest.mark.asyncio
    async def test_stale_token_already_replaced_skips_post(self, stack: Stack, make_user) -> None:
        user = await make_user(token_expires_at=None)
        assert await stack.credentials.get_valid_token(user.id) == "fresh-token-1"

        token = await stack.credentials.refresh(user.id, stale_token="valid-token")

        assert token == "fresh-token-1"
        assert len(stack.google.token_calls) == 1

    @pytest.mark.asyncio
    async def test_stale_token_still_stored_is_refreshed(self, stack: Stack, make_user) -> None:
        user = await make_user()
        assert await stack.credentials.refresh(user.id, stale_token="valid-token") == "fresh-token-1"
        assert len(stack.google.token_calls) == 1

    @pytest.mark.asyncio
    async def test_replaced_token_near_expiry_is_refreshed(self, stack: Stack, make_user) -> None:
        user = await make_user(access_token="other-token", token_expires_at=NOW + timedelta(minutes=1))
        assert await stack.credentials.refresh(user.id, stale_token="valid-token") == "fresh-token-1"
        assert len(stack.google.token_calls) == 1


class TestLinkGoogleAccount:
    @pytest.mark.asyncio
    async def test_creates_new_user(self, stack: Stack) -> None:
        user = await stack.credentials.link_google_account(
            provider_id="g-1", email="ana@example.com", name="Ana",
            access_token="at", refresh_token="rt",
        )
        assert user.total_steps == 0
        assert user.refresh_token == "rt"
        assert user.token_expires_at == NOW + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_relogin_without_refresh_token_preserves_it(self, stack: Stack) -> None:
        first = await stack.credentials.link_google_account(
            provider_id="g-1", email="ana@example.com", name="Ana",
            access_token="at-1", refresh_token="rt-1",
        )
        second = await stack.credentials.link_google_account(
            provider_id="g-1", email="ana@example.com", name="Ana",
            access_token="at-2", refresh_token=None, expires_in=1800,
        )

        assert second.id == first.id
        assert second.access_token == "at-2"
        assert second.refresh_token == "rt-1"
        assert second.token_expires_at == NOW + timedelta(seconds=1800)

    @pytest.mark.asyncio
    async def test_links_existing_email_case_insensitively(self, stack: Stack) -> None:
        existing = await stack.store.create_user(email="Bo@Example.com", name="Bo")

        linked = await stack.credentials.link_google_account(
            provider_id="g-bo", email="bo@example.com", name="Bo",
            access_token="at", refresh_token=None,
        )

        assert linked.id == existing.id
        assert linked.provider_id == "g-bo"
        assert linked.refresh_token is None

    @pytest.mark.asyncio
    async def test_relogin_repairs_broken_credentials(self, stack: Stack, make_user) -> None:
        user = await make_user(refresh_token=None, token_expires_at=NOW - timedelta(hours=1))
        assert await stack.credentials.state(user.id) == CredentialState.BROKEN

        await stack.credentials.link_google_account(
            provider_id=user.provider_id, email=user.email, name=user.name,
            access_token="at", refresh_token="rt",
        )
        assert await stack.credentials.state(user.id) == CredentialState.HEALTHY


class TestCredentialState:
    @pytest.mark.asyncio
    async def test_healthy_and_stale(self, stack: Stack, make_user) -> None:
        healthy = await make_user()
        stale = await make_user(token_expires_at=NOW + timedelta(minutes=1))
        assert await stack.credentials.state(healthy.id) == CredentialState.HEALTHY
        assert await stack.credentials.state(stale.id) == CredentialState.STALE

    @pytest.mark.asyncio
    async def test_expiry_crossing_makes_token_stale(self, stack: Stack, make_user) -> None:
        user = await make_user()
        stack.clock.advance(minutes=56)
        assert await stack.credentials.state(user.id) == CredentialState.STALE

    @pytest.mark.asyncio
    async def test_refreshing_while_in_flight(self, stack: Stack, make_user) -> None:
        user = await make_user(token_expires_at=None)
        stack.google.token_delay = 0.05

        task = asyncio.create_task(stack.credentials.get_valid_token(user.id))
        await asyncio.sleep(0.01)
        assert await stack.credentials.state(user.id) == CredentialState.REFRESHING
        await task
        assert await stack.credentials.state(user.id) == CredentialState.HEALTHY
