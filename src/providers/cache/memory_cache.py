"""In-memory cache provider using cachetools.TLRUCache.

Serves as tier 1 of the two-tier cache (bounded, per-instance) and as the
whole store for single-instance or test deployments, including the
rate-limiter counters.  ``TLRUCache`` gives per-item expiry on top of LRU
eviction, so every entry honours its own TTL.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from typing import Any, NamedTuple

import structlog
from cachetools import TLRUCache

from src.interfaces.cache_provider import ICacheProvider

logger = structlog.get_logger(logger_name=__name__)


class _Entry(NamedTuple):
    value: Any
    expires_at: float


def _time_to_use(_key: str, entry: _Entry, _now: float) -> float:
    return entry.expires_at


class MemoryCacheProvider(ICacheProvider):
    """In-memory cache with per-item TTL backed by ``cachetools.TLRUCache``.

    Parameters
    ----------
    max_size:
        Maximum number of entries before the least-recently-used entry
        is evicted.
    ttl:
        Default time-to-live in seconds when ``set`` is called without one.
    timer:
        Monotonic clock; injected by tests.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl: int | None = 3600,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = ttl
        self._timer = timer
        self._lock = threading.RLock()
        self._cache: TLRUCache[str, _Entry] = TLRUCache(
            maxsize=max_size, ttu=_time_to_use, timer=timer
        )

    # ------------------------------------------------------------------
    # ICacheProvider implementation
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Retrieve the cached value for *key*, or ``None`` if missing/expired."""
        with self._lock:
            entry = self._cache.get(key)
        if entry is None:
            logger.debug("cache_miss", key=key)
            return None
        logger.debug("cache_hit", key=key)
        return entry.value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store *value* under *key* for *ttl* seconds (default TTL when omitted)."""
        with self._lock:
            self._cache[key] = _Entry(value, self._expiry(ttl))
        logger.debug("cache_set", key=key)

    async def delete(self, key: str) -> None:
        """Remove *key* from the cache (no-op if absent)."""
        with self._lock:
            self._cache.pop(key, None)
        logger.debug("cache_delete", key=key)

    async def exists(self, key: str) -> bool:
        """Return ``True`` if *key* is present and not expired."""
        with self._lock:
            return key in self._cache

    async def increment(self, key: str, ttl: int, amount: int = 1) -> tuple[int, int]:
        with self._lock:
            now = self._timer()
            entry = self._cache.get(key)
            if entry is None or not isinstance(entry.value, int):
                entry = _Entry(amount, now + ttl)
            else:
                entry = _Entry(entry.value + amount, entry.expires_at)
            self._cache[key] = entry
            remaining = max(0, math.ceil(entry.expires_at - now))
        return entry.value, remaining

    async def add_to_set(self, key: str, member: str, ttl: int | None = None) -> None:
        with self._lock:
            entry = self._cache.get(key)
            expires_at = self._expiry(ttl)
            if entry is not None and isinstance(entry.value, set):
                members = entry.value | {member}
                expires_at = max(expires_at, entry.expires_at)
            else:
                members = {member}
            self._cache[key] = _Entry(members, expires_at)

    async def get_set(self, key: str) -> set[str]:
        with self._lock:
            entry = self._cache.get(key)
        if entry is None or not isinstance(entry.value, set):
            return set()
        return set(entry.value)

    # ------------------------------------------------------------------
    # Extras for tier-1 use
    # ------------------------------------------------------------------

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)

    def _expiry(self, ttl: int | None) -> float:
        effective = ttl if ttl is not None else self._default_ttl
        if effective is None:
            return math.inf
        return self._timer() + effective
