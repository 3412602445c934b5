"""Cache providers.

MemoryCacheProvider is the bounded in-process tier: fast, per-instance and
the only store needed for single-instance deployments and tests.
RedisCacheProvider is the shared tier that keeps cached results and
rate-limit counters consistent across service instances.
"""

from src.providers.cache.memory_cache import MemoryCacheProvider
from src.providers.cache.redis_cache import RedisCacheProvider

__all__ = ["MemoryCacheProvider", "RedisCacheProvider"]
