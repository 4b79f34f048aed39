"""Storage interfaces for users, credentials and daily step records.

Two abstract stores share one ``users`` table:

    CredentialStore  — identity and Google tokens (read by the engine,
                       written by the CredentialManager)
    DailyStepsStore  — (user, day, steps) rows plus the denormalized
                       ``users.total_steps``

``total_steps`` must equal the sum of the user's daily rows after every
successful write, so it is only ever changed inside ``upsert_daily`` (as the
delta ``new - old``) or by ``recompute_total``.

Backends:
    PostgresStepStore  (stepsync.fitness.postgres_store) — production
    InMemoryStepStore  (this module) — local development and tests
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime
from uuid import UUID

from stepsync.fitness.base import DailyStepRecord, User, midnight_utc
from stepsync.fitness.errors import UserNotFoundError

logger = logging.getLogger("stepsync.fitness.stores")


def validate_steps(steps: int) -> int:
    if steps < 0:
        raise ValueError(f"steps must be non-negative, got {steps}")
    return int(steps)


class CredentialStore(ABC):
    """Per-user identity and provider credentials."""

    @abstractmethod
    async def get_user(self, user_id: UUID) -> User | None:
        """Return the user or None."""

    @abstractmethod
    async def list_users(self) -> list[User]:
        """Return every user, ordered by name."""

    @abstractmethod
    async def find_by_provider_id(self, provider_id: str) -> User | None:
        """Return the user linked to a Google account id."""

    @abstractmethod
    async def find_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup by email."""

    @abstractmethod
    async def create_user(
        self,
        email: str,
        name: str,
        provider_id: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
    ) -> User:
        """Insert a new user with ``total_steps = 0``."""

    @abstractmethod
    async def save_credentials(
        self,
        user_id: UUID,
        access_token: str,
        token_expires_at: datetime,
        refresh_token: str | None = None,
        provider_id: str | None = None,
    ) -> User:
        """Overwrite the access token and expiry.

        ``refresh_token`` and ``provider_id`` are only written when not None;
        a None never clears a stored value.

        Raises:
            UserNotFoundError: If the user does not exist.
        """


class DailyStepsStore(ABC):
    """Daily step records and the per-user running total."""

    @abstractmethod
    async def upsert_daily(self, user_id: UUID, day: date | datetime, steps: int) -> DailyStepRecord:
        """Insert or overwrite the record for (user, UTC day of ``day``).

        Adjusts ``total_steps`` by ``steps - old_steps`` (``old_steps = 0`` on
        insert) in the same transaction.

        Raises:
            UserNotFoundError: If the user does not exist.
            ValueError:        If ``steps`` is negative.
        """

    @abstractmethod
    async def list_by_user(self, user_id: UUID) -> list[DailyStepRecord]:
        """Return the user's records, newest date first."""

    @abstractmethod
    async def recompute_total(self, user_id: UUID) -> int:
        """Reset ``total_steps`` to the sum of the user's records and return it."""

    @abstractmethod
    async def leaderboard(self, limit: int | None = None) -> list[User]:
        """Return users ordered by ``total_steps`` descending."""


class StepStore(CredentialStore, DailyStepsStore):
    """A backend that implements both stores over one users table."""


class InMemoryStepStore(StepStore):
    """Process-local backend.

    Writes for one user are serialized by a per-user ``asyncio.Lock``, which
    stands in for the row lock the Postgres backend takes.  Returned objects
    are copies; mutate state only through the store methods.
    """

    def __init__(self) -> None:
        self._users: dict[UUID, User] = {}
        self._daily: dict[UUID, dict[date, int]] = defaultdict(dict)
        self._locks: dict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # CredentialStore
    # ------------------------------------------------------------------

    async def get_user(self, user_id: UUID) -> User | None:
        user = self._users.get(user_id)
        return replace(user) if user else None

    async def list_users(self) -> list[User]:
        return [replace(u) for u in sorted(self._users.values(), key=lambda u: u.name)]

    async def find_by_provider_id(self, provider_id: str) -> User | None:
        for user in self._users.values():
            if user.provider_id == provider_id:
                return replace(user)
        return None

    async def find_by_email(self, email: str) -> User | None:
        needle = email.casefold()
        for user in self._users.values():
            if user.email.casefold() == needle:
                return replace(user)
        return None

    async def create_user(
        self,
        email: str,
        name: str,
        provider_id: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
    ) -> User:
        if await self.find_by_email(email):
            raise ValueError(f"User with email {email} already exists")
        if provider_id and await self.find_by_provider_id(provider_id):
            raise ValueError(f"User with provider id {provider_id} already exists")

        user = User(
            id=uuid.uuid4(),
            email=email,
            name=name,
            provider_id=provider_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
        )
        self._users[user.id] = user
        return replace(user)

    async def save_credentials(
        self,
        user_id: UUID,
        access_token: str,
        token_expires_at: datetime,
        refresh_token: str | None = None,
        provider_id: str | None = None,
    ) -> User:
        async with self._locks[user_id]:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            user.access_token = access_token
            user.token_expires_at = token_expires_at
            if refresh_token is not None:
                user.refresh_token = refresh_token
            if provider_id is not None:
                user.provider_id = provider_id
            return replace(user)

    # ------------------------------------------------------------------
    # DailyStepsStore
    # ------------------------------------------------------------------

    async def upsert_daily(self, user_id: UUID, day: date | datetime, steps: int) -> DailyStepRecord:
        steps = validate_steps(steps)
        key = midnight_utc(day).date()
        async with self._locks[user_id]:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            old_steps = self._daily[user_id].get(key, 0)
            self._daily[user_id][key] = steps
            user.total_steps += steps - old_steps
        return DailyStepRecord(user_id=user_id, date=key, steps=steps)

    async def list_by_user(self, user_id: UUID) -> list[DailyStepRecord]:
        if user_id not in self._users:
            raise UserNotFoundError(user_id)
        rows = self._daily.get(user_id, {})
        return [
            DailyStepRecord(user_id=user_id, date=day, steps=rows[day])
            for day in sorted(rows, reverse=True)
        ]

    async def recompute_total(self, user_id: UUID) -> int:
        async with self._locks[user_id]:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            user.total_steps = sum(self._daily.get(user_id, {}).values())
            return user.total_steps

    async def leaderboard(self, limit: int | None = None) -> list[User]:
        ranked = sorted(self._users.values(), key=lambda u: (-u.total_steps, u.name))
        if limit is not None:
            ranked = ranked[:limit]
        return [replace(u) for u in ranked]
