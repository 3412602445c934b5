"""Abstract base class for cache service providers.

Defines the contract for the key-value stores behind the two-tier cache and
the rate limiter.  Implementations: an in-process ``cachetools`` store
(tier 1, and the single-instance fallback) and a Redis store (tier 2,
shared across service instances).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class ICacheProvider(ABC):
    """Contract for key-value cache services.

    All operations are async to allow for network-backed stores (e.g. Redis)
    without blocking the event loop.  Values are JSON-compatible.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Retrieve the value stored under *key*.

        Returns
        -------
        Any or None
            The cached value if present and not expired; ``None`` otherwise.
        """

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store *value* under *key* with an optional time-to-live in seconds.

        Writes are idempotent: concurrent writers of the same key leave the
        last value in place.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the entry stored under *key* (no-op if absent)."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return ``True`` if *key* is present in the cache and not expired."""

    @abstractmethod
    async def increment(self, key: str, ttl: int, amount: int = 1) -> tuple[int, int]:
        """Atomically add *amount* to the counter at *key*.

        The first increment creates the counter with a *ttl*-second expiry;
        later increments within that window keep the original expiry.  A
        negative *amount* takes back an earlier increment.

        Returns
        -------
        tuple[int, int]
            The counter value after incrementing and the seconds remaining
            until it expires.
        """

    @abstractmethod
    async def add_to_set(self, key: str, member: str, ttl: int | None = None) -> None:
        """Add *member* to the set stored under *key*."""

    @abstractmethod
    async def get_set(self, key: str) -> set[str]:
        """Return the members of the set under *key* (empty when missing)."""

    async def close(self) -> None:
        """Release connections held by the provider."""
        return None
