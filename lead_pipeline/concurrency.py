"""
Per-key serialization helpers.

KeyedLocks gives one asyncio.Lock per entity id; SingleFlight makes
concurrent callers for the same key share a single in-flight call.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLocks:
    """Lazily created locks, dropped again once nobody holds or waits on them."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class SingleFlight:
    """
    Collapses concurrent calls for the same key into one.

    The first caller starts the work; callers arriving while it runs await
    the same task and receive its result (or its exception).
    """

    def __init__(self):
        self._inflight: Dict[str, "asyncio.Task[Any]"] = {}

    async def run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug(f"Joining in-flight call for {key}")
        return await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def in_flight(self, key: str) -> bool:
        return key in self._inflight
