"""Configuration module — exports Settings, the component configs and load_settings."""

from src.config.loader import load_settings
from src.config.settings import (
    CacheConfig,
    ChunkingConfig,
    CircuitBreakerConfig,
    EmbeddingConfig,
    RateLimitConfig,
    RetrievalConfig,
    Settings,
)

__all__ = [
    "CacheConfig",
    "ChunkingConfig",
    "CircuitBreakerConfig",
    "EmbeddingConfig",
    "RateLimitConfig",
    "RetrievalConfig",
    "Settings",
    "load_settings",
]
