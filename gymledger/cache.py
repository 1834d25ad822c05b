"""
cache.py
Time-boxed memoization for reference data (membership types, staff).
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

from .config import DEFAULT_CACHE_TTL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    stored_at: float


class ExpiringCache:
    """
    Key/value cache whose entries expire `ttl` seconds after being stored.
    Stale entries are dropped by the get() that finds them; there is no sweep.
    """

    def __init__(self, ttl: float = DEFAULT_CACHE_TTL, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[Any, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at < self.ttl:
                return entry.value
            del self._entries[key]
            logger.debug("Cache entry %r expired", key)
            return None

    def set(self, key, value) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def get_or_load(self, key, loader):
        """Cached value for `key`, or await loader() and cache its result."""
        value = self.get(key)
        if value is not None:
            logger.debug("Cache hit %r", key)
            return value
        value = await loader()
        self.set(key, value)
        return value


class ReferenceCatalog:
    """Cached reads of the store's reference tables."""

    def __init__(self, store, cache: ExpiringCache):
        self.store = store
        self.cache = cache

    async def membership_types(self):
        return await self.cache.get_or_load("membership_types", self.store.list_membership_types)

    async def staff(self):
        return await self.cache.get_or_load("staff", self.store.list_staff)

    def invalidate(self) -> None:
        self.cache.clear()
