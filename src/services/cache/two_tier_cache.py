"""Two-tier cache for query embeddings and search results.

Tier 1 is a bounded in-process :class:`MemoryCacheProvider`; tier 2 is an
optional shared store (Redis) reached through the ``redis`` circuit
breaker.  Reads check tier 1, then tier 2, back-filling tier 1 on a shared
hit.  Writes go to both tiers.

Any shared-tier failure (connection refused, timeout, open breaker) is
logged and treated as a miss: the cache never fails the operation that
uses it.

Entries can be tagged.  A tag is a set ``tag:<name>`` listing the keys
written under it, kept in both tiers with the same TTL as the entries.
Search results are tagged with the documents they reference, which lets
:meth:`TwoTierCache.invalidate_document` drop exactly the stale entries
when a document's chunks change.
"""

from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

import structlog

from src.interfaces.cache_provider import ICacheProvider
from src.providers.cache.memory_cache import MemoryCacheProvider
from src.services.resilience.circuit_breaker import CircuitBreaker

logger = structlog.get_logger(logger_name=__name__)

_T = TypeVar("_T")

_TAG_PREFIX = "tag:"


def document_tag(document_id: str) -> str:
    return f"document:{document_id}"


def owner_tag(owner_id: str) -> str:
    return f"owner:{owner_id}"


class TwoTierCache:
    """Read-through cache over a local tier and an optional shared tier.

    Parameters
    ----------
    local:
        The in-process tier.
    shared:
        The shared tier, or ``None`` for single-instance deployments.
    breaker:
        Circuit breaker guarding the shared tier.
    default_ttl:
        TTL in seconds for writes that do not pass one.
    """

    def __init__(
        self,
        local: MemoryCacheProvider,
        shared: ICacheProvider | None = None,
        breaker: CircuitBreaker | None = None,
        default_ttl: int = 300,
    ) -> None:
        self._local = local
        self._shared = shared
        self._breaker = breaker
        self._default_ttl = default_ttl
        self._stats_lock = threading.Lock()
        self._stats = {"local_hits": 0, "shared_hits": 0, "misses": 0, "shared_errors": 0}

    @property
    def has_shared_tier(self) -> bool:
        return self._shared is not None

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Return the cached value for *key* or ``None`` on a miss in both tiers."""
        value = await self._local.get(key)
        if value is not None:
            self._count("local_hits")
            return value

        if self._shared is not None:
            shared = self._shared
            value = await self._shared_call("get", lambda: shared.get(key), None)
            if value is not None:
                self._count("shared_hits")
                await self._local.set(key, value, ttl=self._default_ttl)
                return value

        self._count("misses")
        return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Write *value* to both tiers and record *key* under each tag."""
        ttl = ttl or self._default_ttl
        tag_list = list(dict.fromkeys(tags))

        await self._local.set(key, value, ttl=ttl)
        for tag in tag_list:
            await self._local.add_to_set(_TAG_PREFIX + tag, key, ttl=ttl)

        if self._shared is None:
            return
        shared = self._shared

        async def _write() -> None:
            await shared.set(key, value, ttl=ttl)
            for tag in tag_list:
                await shared.add_to_set(_TAG_PREFIX + tag, key, ttl=ttl)

        await self._shared_call("set", _write, None)

    async def delete(self, key: str) -> None:
        await self._local.delete(key)
        if self._shared is not None:
            shared = self._shared
            await self._shared_call("delete", lambda: shared.delete(key), None)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate_tag(self, tag: str) -> int:
        """Remove every entry recorded under *tag* from both tiers.

        Returns the number of distinct keys removed.
        """
        tag_key = _TAG_PREFIX + tag
        keys = await self._local.get_set(tag_key)
        if self._shared is not None:
            shared = self._shared
            keys |= await self._shared_call("get_set", lambda: shared.get_set(tag_key), set())

        for key in keys:
            await self._local.delete(key)
        await self._local.delete(tag_key)

        if self._shared is not None:
            shared = self._shared

            async def _purge() -> None:
                for key in keys:
                    await shared.delete(key)
                await shared.delete(tag_key)

            await self._shared_call("invalidate", _purge, None)

        if keys:
            logger.info("cache_invalidated", tag=tag, keys=len(keys))
        return len(keys)

    async def invalidate_document(self, document_id: str, owner_id: str | None = None) -> int:
        """Drop cached searches that reference *document_id*.

        Unfiltered searches of the owner are dropped too, because the
        document's new chunks may now rank in them.
        """
        removed = await self.invalidate_tag(document_tag(document_id))
        if owner_id:
            removed += await self.invalidate_tag(owner_tag(owner_id))
        return removed

    async def invalidate_owner(self, owner_id: str) -> int:
        return await self.invalidate_tag(owner_tag(owner_id))

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, float]:
        with self._stats_lock:
            snapshot: dict[str, float] = dict(self._stats)
        hits = snapshot["local_hits"] + snapshot["shared_hits"]
        lookups = hits + snapshot["misses"]
        snapshot["hit_rate"] = round(hits / lookups, 4) if lookups else 0.0
        snapshot["local_size"] = len(self._local)
        return snapshot

    def reset_stats(self) -> None:
        with self._stats_lock:
            for key in self._stats:
                self._stats[key] = 0

    def clear(self) -> None:
        """Empty the local tier.  Shared entries expire on their own TTLs."""
        self._local.clear()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _count(self, field: str) -> None:
        with self._stats_lock:
            self._stats[field] += 1

    async def _shared_call(
        self,
        operation: str,
        call: Callable[[], Awaitable[_T]],
        default: _T,
    ) -> _T:
        try:
            if self._breaker is not None:
                return await self._breaker.call(call)
            return await call()
        except Exception as exc:
            self._count("shared_errors")
            logger.warning("shared_cache_degraded", operation=operation, error=str(exc))
            return default
