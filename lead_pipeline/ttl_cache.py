"""
Scoped TTL cache with atomic get-or-compute.

Entries are evicted lazily: a lookup at or past ``stored_at + ttl`` drops
the entry and reports a miss. Concurrent misses on the same key are
serialized so the factory runs once.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

from .concurrency import KeyedLocks
from .models import utcnow

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    stored_at: datetime


class TTLCache(Generic[V]):
    """In-process cache whose entries expire a fixed interval after creation."""

    def __init__(
        self,
        ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
        name: str = "cache",
    ):
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._entries: Dict[str, _Entry[V]] = {}
        self._locks = KeyedLocks()
        self.hits = 0
        self.misses = 0

    def _lookup(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.stored_at + self.ttl:
            del self._entries[key]
            logger.debug(f"{self.name}: evicted expired entry")
            return None
        return entry.value

    def get(self, key: str) -> Optional[V]:
        value = self._lookup(key)
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    def set(self, key: str, value: V) -> None:
        self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    async def get_or_compute(
        self, key: str, factory: Callable[[], Awaitable[V]]
    ) -> Tuple[V, bool]:
        """
        Return ``(value, hit)``.

        On a miss the factory is awaited under the key's lock and its result
        stored. If the factory raises, nothing is cached.
        """
        async with self._locks.hold(key):
            value = self.get(key)
            if value is not None:
                return value, True
            value = await factory()
            self.set(key, value)
            return value, False

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, float]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 4) if total else 0.0,
        }
