"""Per-user sliding-window rate limiting for pipeline invocations.

Requests are counted in fixed buckets of ``window_seconds`` (one counter
per bucket in the shared cache store), and the limit is applied to a
sliding estimate over the last ``window_seconds``:

    estimate = previous_bucket * (1 - elapsed_fraction) + current_bucket

where ``elapsed_fraction`` is how far the clock is into the current bucket.
A burst at the end of one bucket therefore still weighs on the start of
the next, so a subject cannot get twice its quota around a boundary.
Denied requests are taken back out of the counter and do not extend the
lockout.

Backed by Redis in multi-instance deployments and by the in-process
``MemoryCacheProvider`` otherwise.  Buckets are aligned on wall-clock time
so every instance agrees on them.  Rate limiting fails open: when it is
disabled, or the store cannot be reached, requests are allowed.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable

import structlog

from src.config.settings import RateLimitConfig
from src.interfaces.cache_provider import ICacheProvider
from src.models.resilience import RateLimitDecision
from src.utils.errors import RateLimitExceededError

logger = structlog.get_logger(logger_name=__name__)

_ANONYMOUS = "anonymous"


class RateLimiter:
    """Sliding-window quota per ``(scope, subject)`` over counters in *store*.

    Parameters
    ----------
    store:
        Cache provider holding the per-bucket counters.
    config:
        Quota, window length and key prefix.
    clock:
        Wall-clock source in seconds; injected by tests.
    """

    def __init__(
        self,
        store: ICacheProvider,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._config = config or RateLimitConfig()
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def key_for(self, subject: str, scope: str = "chat") -> str:
        return f"{self._config.key_prefix}:{scope}:{subject or _ANONYMOUS}"

    async def check(self, subject: str, scope: str = "chat") -> RateLimitDecision:
        """Count one request for *subject* and report whether it is allowed."""
        quota = self._config.quota
        window = self._config.window_seconds

        if not self._config.enabled:
            return RateLimitDecision(allowed=True, limit=quota, remaining=quota, reset_after=0)

        key = self.key_for(subject, scope)
        now = self._clock()
        bucket = math.floor(now / window)
        elapsed = (now - bucket * window) / window
        current_key = f"{key}:{bucket}"
        # A bucket is read as "previous" during the following window.
        bucket_ttl = window * 2

        try:
            current, _ = await self._store.increment(current_key, bucket_ttl)
            previous = await self._store.get(f"{key}:{bucket - 1}")
        except Exception as exc:
            logger.warning("rate_limit_store_unavailable", key=key, error=str(exc))
            return RateLimitDecision(allowed=True, limit=quota, remaining=quota, reset_after=0)

        previous = previous if isinstance(previous, int) and previous > 0 else 0
        estimate = round(previous * (1.0 - elapsed) + current, 6)
        reset_after = math.ceil((1.0 - elapsed) * window)

        if estimate > quota:
            try:
                await self._store.increment(current_key, bucket_ttl, amount=-1)
            except Exception as exc:
                logger.warning("rate_limit_release_failed", key=key, error=str(exc))
            retry_after = _retry_after(previous, current - 1, elapsed, window, quota)
            logger.info(
                "rate_limit_exceeded",
                subject=subject or _ANONYMOUS,
                scope=scope,
                estimate=estimate,
                retry_after=retry_after,
            )
            return RateLimitDecision(
                allowed=False,
                limit=quota,
                remaining=0,
                reset_after=reset_after,
                retry_after=retry_after,
            )

        return RateLimitDecision(
            allowed=True,
            limit=quota,
            remaining=max(0, math.floor(quota - estimate)),
            reset_after=reset_after,
        )

    async def enforce(self, subject: str, scope: str = "chat") -> RateLimitDecision:
        """Like :meth:`check` but raise :class:`RateLimitExceededError` when denied."""
        decision = await self.check(subject, scope)
        if not decision.allowed:
            raise RateLimitExceededError(
                retry_after=decision.retry_after or 1,
                limit=decision.limit,
            )
        return decision


def _retry_after(previous: int, current: int, elapsed: float, window: int, quota: int) -> int:
    """Seconds until one more request fits under the sliding estimate.

    *current* is the count already admitted in the current bucket.
    """
    if current + 1 <= quota:
        # Room in this bucket once the previous one has decayed enough.
        target = 1.0 - (quota - current - 1) / previous
        wait = (target - elapsed) * window
    else:
        # This bucket is full; it has to become the decaying previous one.
        target = 1.0 - (quota - 1) / current
        wait = (1.0 - elapsed + target) * window
    return max(1, math.ceil(round(wait, 6)))
