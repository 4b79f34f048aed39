"""Per-key call coalescing for asyncio.

At most one call per key is in flight.  Callers that arrive while it runs
await the same outcome (result or exception) instead of starting their own.
Used to serialize OAuth token refreshes per user.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

logger = logging.getLogger("stepsync.fitness.sync.singleflight")

T = TypeVar("T")


class Singleflight(Generic[T]):
    """Deduplicate concurrent calls by key.

    Usage::

        flights: Singleflight[str] = Singleflight()
        token = await flights.do(user_id, lambda: refresh(user_id))
    """

    def __init__(self) -> None:
        self._inflight: dict[Hashable, asyncio.Task[T]] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` for ``key`` unless a call is already in flight, then await it.

        The leader's work runs in its own task, so one waiter being cancelled
        does not cancel the call for the others.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._forget(k, _t))
        else:
            logger.debug("Joining in-flight call for %s", key)
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task[T]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved when every waiter has gone away.
        if not task.cancelled():
            task.exception()
