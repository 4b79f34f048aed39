"""Postgres backend for the credential and daily-steps stores.

Tables (provisioned externally)::

    users(id uuid pk, email text unique, name text, provider_id text unique null,
          access_token text null, refresh_token text null,
          token_expires_at bigint null,          -- epoch millis
          total_steps int not null default 0)
    daily_steps(user_id uuid fk users(id), date date, steps int not null,
                primary key (user_id, date))

``upsert_daily`` locks the user row first, so every write that touches a
user's ``total_steps`` is serialized per user and the delta it applies is
computed against the row it replaces.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import AsyncGenerator
from uuid import UUID

import asyncpg

from stepsync.fitness.base import (
    DailyStepRecord,
    User,
    from_epoch_millis,
    midnight_utc,
    to_epoch_millis,
)
from stepsync.fitness.errors import StorageError, UserNotFoundError
from stepsync.fitness.stores import StepStore, validate_steps
from stepsync.services.database import get_connection

logger = logging.getLogger("stepsync.fitness.postgres_store")

_USER_COLUMNS = (
    "id, email, name, provider_id, access_token, refresh_token, "
    "token_expires_at, total_steps"
)


def _row_to_user(row: asyncpg.Record) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        provider_id=row["provider_id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        token_expires_at=from_epoch_millis(row["token_expires_at"]),
        total_steps=row["total_steps"],
    )


class PostgresStepStore(StepStore):
    """asyncpg-backed implementation of both stores."""

    def __init__(self, pool: asyncpg.Pool | None = None) -> None:
        """Args:
            pool: Connection pool; defaults to the app-wide pool from
                  ``stepsync.services.database``.
        """
        self._pool = pool

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Open a transaction, translating driver failures into StorageError."""
        try:
            async with get_connection(self._pool) as conn:
                yield conn
        except asyncpg.UniqueViolationError as exc:
            raise ValueError(str(exc)) from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            logger.error("Database error: %s", exc)
            raise StorageError(f"Database error: {exc}") from exc

    # ------------------------------------------------------------------
    # CredentialStore
    # ------------------------------------------------------------------

    async def get_user(self, user_id: UUID) -> User | None:
        async with self._transaction() as conn:
            row = await conn.fetchrow(f"SELECT {_USER_COLUMNS} FROM users WHERE id = $1", user_id)
        return _row_to_user(row) if row else None

    async def list_users(self) -> list[User]:
        async with self._transaction() as conn:
            rows = await conn.fetch(f"SELECT {_USER_COLUMNS} FROM users ORDER BY name ASC")
        return [_row_to_user(r) for r in rows]

    async def find_by_provider_id(self, provider_id: str) -> User | None:
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                f"SELECT {_USER_COLUMNS} FROM users WHERE provider_id = $1", provider_id
            )
        return _row_to_user(row) if row else None

    async def find_by_email(self, email: str) -> User | None:
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                f"SELECT {_USER_COLUMNS} FROM users WHERE lower(email) = lower($1)", email
            )
        return _row_to_user(row) if row else None

    async def create_user(
        self,
        email: str,
        name: str,
        provider_id: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
    ) -> User:
        expires_ms = to_epoch_millis(token_expires_at) if token_expires_at else None
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO users (id, email, name, provider_id, access_token,
                                   refresh_token, token_expires_at, total_steps)
                VALUES ($1, $2, $3, $4, $5, $6, $7, 0)
                RETURNING {_USER_COLUMNS}
                """,
                uuid.uuid4(), email, name, provider_id, access_token,
                refresh_token, expires_ms,
            )
        return _row_to_user(row)

    async def save_credentials(
        self,
        user_id: UUID,
        access_token: str,
        token_expires_at: datetime,
        refresh_token: str | None = None,
        provider_id: str | None = None,
    ) -> User:
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE users
                   SET access_token = $2,
                       token_expires_at = $3,
                       refresh_token = COALESCE($4, refresh_token),
                       provider_id = COALESCE($5, provider_id)
                 WHERE id = $1
                RETURNING {_USER_COLUMNS}
                """,
                user_id, access_token, to_epoch_millis(token_expires_at),
                refresh_token, provider_id,
            )
        if row is None:
            raise UserNotFoundError(user_id)
        return _row_to_user(row)

    # ------------------------------------------------------------------
    # DailyStepsStore
    # ------------------------------------------------------------------

    async def upsert_daily(self, user_id: UUID, day: date | datetime, steps: int) -> DailyStepRecord:
        steps = validate_steps(steps)
        key = midnight_utc(day).date()

        async with self._transaction() as conn:
            locked = await conn.fetchval(
                "SELECT total_steps FROM users WHERE id = $1 FOR UPDATE", user_id
            )
            if locked is None:
                raise UserNotFoundError(user_id)

            old_steps = await conn.fetchval(
                "SELECT steps FROM daily_steps WHERE user_id = $1 AND date = $2",
                user_id, key,
            )
            await conn.execute(
                """
                INSERT INTO daily_steps (user_id, date, steps)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id, date) DO UPDATE SET steps = EXCLUDED.steps
                """,
                user_id, key, steps,
            )
            delta = steps - (old_steps or 0)
            if delta:
                await conn.execute(
                    "UPDATE users SET total_steps = total_steps + $2 WHERE id = $1",
                    user_id, delta,
                )

        return DailyStepRecord(user_id=user_id, date=key, steps=steps)

    async def list_by_user(self, user_id: UUID) -> list[DailyStepRecord]:
        async with self._transaction() as conn:
            exists = await conn.fetchval("SELECT 1 FROM users WHERE id = $1", user_id)
            if not exists:
                raise UserNotFoundError(user_id)
            rows = await conn.fetch(
                "SELECT user_id, date, steps FROM daily_steps "
                "WHERE user_id = $1 ORDER BY date DESC",
                user_id,
            )
        return [DailyStepRecord(user_id=r["user_id"], date=r["date"], steps=r["steps"]) for r in rows]

    async def recompute_total(self, user_id: UUID) -> int:
        async with self._transaction() as conn:
            total = await conn.fetchval(
                """
                UPDATE users
                   SET total_steps = (
                       SELECT COALESCE(SUM(steps), 0) FROM daily_steps WHERE user_id = $1
                   )
                 WHERE id = $1
                RETURNING total_steps
                """,
                user_id,
            )
        if total is None:
            raise UserNotFoundError(user_id)
        logger.info("Recomputed total_steps for user %s: %d", user_id, total)
        return total

    async def leaderboard(self, limit: int | None = None) -> list[User]:
        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"SELECT {_USER_COLUMNS} FROM users "
                "ORDER BY total_steps DESC, name ASC LIMIT $1",
                limit,
            )
        return [_row_to_user(r) for r in rows]
