"""Shared fixtures and a fake Google Fit for step sync tests."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable
from urllib.parse import parse_qs

import httpx
import pytest

from stepsync.fitness.base import User
from stepsync.fitness.config_loader import SyncConfig, load_sync_config
from stepsync.fitness.credentials import CredentialManager
from stepsync.fitness.google_fit import GoogleFitClient
from stepsync.fitness.stores import InMemoryStepStore
from stepsync.fitness.sync.engine import SyncEngine
from stepsync.fitness.sync.scheduler import StepSyncScheduler

# Fixed "now": 2026-02-23 12:00 UTC, so yesterday is 2026-02-22.
NOW = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)
TODAY = date(2026, 2, 23)
YESTERDAY = date(2026, 2, 22)

AGGREGATE_URL = "https://www.googleapis.com/fitness/v1/users/me/dataset:aggregate"
TOKEN_URL = "https://oauth2.googleapis.com/token"


def day_of(millis: int) -> date:
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).date()


def aggregate_body(*point_values: int) -> dict:
    """A realistic dataset:aggregate response with one bucket."""
    return {
        "bucket": [
            {
                "startTimeMillis": "1771718400000",
                "endTimeMillis": "1771804800000",
                "dataset": [
                    {
                        "dataSourceId": "derived:com.google.step_count.delta:"
                        "com.google.android.gms:aggregated",
                        "point": [
                            {
                                "dataTypeName": "com.google.step_count.delta",
                                "value": [{"intVal": v, "mapVal": []}],
                            }
                            for v in point_values
                        ],
                    }
                ],
            }
        ]
    }


class FakeGoogleFit:
    """Scriptable stand-in for the aggregate and token endpoints.

    Attributes:
        steps_by_day:      Steps reported per UTC day (missing day → 0).
        failing_days:      Day → HTTP status to answer with instead.
        rejected_tokens:   Bearer tokens answered with 401.
        token_status:      Status code of the token endpoint.
        token_body:        JSON body of the token endpoint (``None`` → auto).
        token_delay:       Seconds the token endpoint takes to answer.
        aggregate_calls:   (bearer token, request JSON) per aggregate call.
        token_calls:       Parsed form fields per token call.
    """

    def __init__(self) -> None:
        self.steps_by_day: dict[date, int] = {}
        self.failing_days: dict[date, int] = {}
        self.rejected_tokens: set[str] = set()
        self.token_status = 200
        self.token_body: dict | None = None
        self.token_delay = 0.0
        self.aggregate_calls: list[tuple[str, dict]] = []
        self.token_calls: list[dict] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == AGGREGATE_URL:
            return self._aggregate(request)
        if str(request.url) == TOKEN_URL:
            return await self._token(request)
        return httpx.Response(404, json={"error": {"message": "Not Found"}})

    def _aggregate(self, request: httpx.Request) -> httpx.Response:
        token = request.headers["Authorization"].removeprefix("Bearer ")
        body = json.loads(request.content)
        self.aggregate_calls.append((token, body))

        if token in self.rejected_tokens:
            return httpx.Response(401, json={"error": {"code": 401, "message": "Invalid Credentials"}})
        day = day_of(body["startTimeMillis"])
        if day in self.failing_days:
            status = self.failing_days[day]
            return httpx.Response(status, json={"error": {"code": status, "message": "Backend Error"}})
        steps = self.steps_by_day.get(day, 0)
        return httpx.Response(200, json=aggregate_body(steps) if steps else {"bucket": []})

    async def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_calls.append(form)
        if self.token_delay:
            await asyncio.sleep(self.token_delay)
        body = self.token_body
        if body is None:
            body = {
                "access_token": f"fresh-token-{len(self.token_calls)}",
                "expires_in": 3599,
                "token_type": "Bearer",
            }
        return httpx.Response(self.token_status, json=body)

    @property
    def aggregate_days(self) -> list[date]:
        return [day_of(body["startTimeMillis"]) for _, body in self.aggregate_calls]


@dataclass
class Stack:
    """Everything wired together over an in-memory store."""

    store: InMemoryStepStore
    google: FakeGoogleFit
    client: GoogleFitClient
    credentials: CredentialManager
    engine: SyncEngine
    scheduler: StepSyncScheduler
    clock: "MutableClock"


class MutableClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the bundled sync config."""
    return load_sync_config()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def google() -> FakeGoogleFit:
    return FakeGoogleFit()


@pytest.fixture
def store() -> InMemoryStepStore:
    return InMemoryStepStore()


@pytest.fixture
def stack(
    store: InMemoryStepStore,
    google: FakeGoogleFit,
    sync_config: SyncConfig,
    clock: MutableClock,
) -> Stack:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(google))
    client = GoogleFitClient(
        client_id="test-client-id",
        client_secret="test-client-secret",
        http_client=http_client,
        config=sync_config,
        clock=clock,
    )
    credentials = CredentialManager(store, client, config=sync_config, clock=clock)
    engine = SyncEngine(credentials, client, store, store, clock=clock)
    scheduler = StepSyncScheduler(engine, store, config=sync_config, clock=clock)
    return Stack(store, google, client, credentials, engine, scheduler, clock)


@pytest.fixture
def make_user(store: InMemoryStepStore) -> Callable[..., Awaitable[User]]:
    """Factory: create a user whose token is valid for another hour by default."""
    counter = {"n": 0}

    async def _make(
        name: str | None = None,
        access_token: str | None = "valid-token",
        refresh_token: str | None = "refresh-token",
        token_expires_at: datetime | None = NOW + timedelta(hours=1),
    ) -> User:
        counter["n"] += 1
        name = name or f"user{counter['n']}"
        return await store.create_user(
            email=f"{name}@example.com",
            name=name,
            provider_id=f"google-{name}",
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
        )

    return _make
