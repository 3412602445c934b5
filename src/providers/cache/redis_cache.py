"""Redis cache provider (shared tier of the two-tier cache).

Uses the asyncio client from ``redis-py``.  Values are stored as JSON
strings so any instance of the service can read what another wrote.
Counters for the rate limiter use ``INCRBY`` + ``TTL`` in one transaction;
the expiry is attached on the first increment of a window.  Tag sets only
ever extend their expiry (``EXPIRE NX`` then ``EXPIRE GT``), so a short-lived
entry cannot shorten the index of longer-lived ones.  ``GT``/``NX`` need
Redis 7.

Connection errors are not swallowed here.  The two-tier cache and the rate
limiter decide how to degrade when the shared store is unreachable.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from redis import asyncio as aioredis

from src.interfaces.cache_provider import ICacheProvider

logger = structlog.get_logger(logger_name=__name__)


class RedisCacheProvider(ICacheProvider):
    """Shared key-value store backed by Redis.

    Parameters
    ----------
    url:
        Redis connection URL, e.g. ``redis://localhost:6379/0``.
    key_prefix:
        Namespace prepended to every key so several deployments can share
        one Redis database.
    socket_timeout:
        Seconds before a Redis command gives up.
    client:
        Pre-built ``redis.asyncio.Redis`` client (tests inject a mock).
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "docchat:",
        socket_timeout: float = 2.0,
        client: aioredis.Redis | None = None,
    ) -> None:
        self._prefix = key_prefix
        self._client = client or aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    # ------------------------------------------------------------------
    # ICacheProvider implementation
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("redis_cache_undecodable", key=key)
            await self._client.delete(self._key(key))
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        payload = json.dumps(value, separators=(",", ":"))
        if ttl:
            await self._client.set(self._key(key), payload, ex=ttl)
        else:
            await self._client.set(self._key(key), payload)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(self._key(key)))

    async def increment(self, key: str, ttl: int, amount: int = 1) -> tuple[int, int]:
        full_key = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incrby(full_key, amount)
            pipe.ttl(full_key)
            count, remaining = await pipe.execute()
        if remaining is None or remaining < 0:
            # First increment of a window: attach the expiry.
            await self._client.expire(full_key, ttl)
            remaining = ttl
        return int(count), int(remaining)

    async def add_to_set(self, key: str, member: str, ttl: int | None = None) -> None:
        full_key = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.sadd(full_key, member)
            if ttl:
                pipe.expire(full_key, ttl, nx=True)
                pipe.expire(full_key, ttl, gt=True)
            await pipe.execute()

    async def get_set(self, key: str) -> set[str]:
        members = await self._client.smembers(self._key(key))
        return {str(m) for m in members or ()}

    async def close(self) -> None:
        await self._client.aclose()
        logger.debug("redis_cache_closed")
