"""Application settings loaded from environment variables via pydantic-settings.

# ─── HOW SETTINGS WORK ─────────────────────────────────────────────────
#
# ``Settings`` reads configuration from (highest priority first):
#
#   1. Environment variables — e.g. OPENAI_API_KEY=sk-abc123
#   2. .env file             — key=value lines in the project root
#   3. config/config.yaml    — via src.config.loader.load_settings()
#   4. Field defaults below
#
# Field ``chunk_size`` maps to env var ``CHUNK_SIZE`` automatically.
#
# Components never read ``Settings`` directly.  They receive one of the
# small frozen config models defined here (ChunkingConfig, RetrievalConfig,
# ...), built by the ``Settings.*_config()`` accessors.  Each model
# validates its ranges on construction, so a bad value fails at startup
# instead of in the middle of a request.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Validated component configs
# ---------------------------------------------------------------------------


class ChunkingConfig(BaseModel):
    """Chunk sizing, measured in estimated tokens."""

    model_config = ConfigDict(frozen=True)

    chunk_size: int = Field(default=500, ge=50, le=8000)
    chunk_overlap: int = Field(default=50, ge=0)
    min_chunk_chars: int = Field(
        default=50, ge=1, description="Chunks shorter than this count as degenerate."
    )

    @model_validator(mode="after")
    def _overlap_below_size(self) -> ChunkingConfig:
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self


class RetrievalConfig(BaseModel):
    """Defaults and bounds for similarity search."""

    model_config = ConfigDict(frozen=True)

    default_top_k: int = Field(default=5, ge=1, le=20)
    default_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_top_k: int = Field(default=20, ge=1, le=20)
    candidate_multiplier: int = Field(
        default=2, ge=1, le=10, description="Fetch top_k * multiplier before thresholding."
    )
    max_query_length: int = Field(default=1000, ge=1)


class CacheConfig(BaseModel):
    """Two-tier cache sizing and TTLs."""

    model_config = ConfigDict(frozen=True)

    ttl_seconds: int = Field(default=300, ge=1)
    embedding_ttl_seconds: int = Field(default=300, ge=1)
    max_entries: int = Field(default=1000, ge=1)
    redis_url: str = Field(default="", description="Empty disables the shared tier.")


class CircuitBreakerConfig(BaseModel):
    """Thresholds for a single circuit breaker."""

    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=2, ge=1)
    open_timeout_ms: int = Field(default=30_000, ge=1)
    volume_threshold: int = Field(default=10, ge=1)
    window_ms: int = Field(default=60_000, ge=1)
    half_open_limit: int = Field(default=3, ge=1)
    call_timeout_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _success_reachable(self) -> CircuitBreakerConfig:
        if self.success_threshold > self.half_open_limit:
            raise ValueError("success_threshold cannot exceed half_open_limit")
        return self


class RateLimitConfig(BaseModel):
    """Per-subject request quota over a sliding window."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    quota: int = Field(default=50, ge=1)
    window_seconds: int = Field(default=3600, ge=1)
    key_prefix: str = "ratelimit"


class EmbeddingConfig(BaseModel):
    """Embedding model and batching behaviour."""

    model_config = ConfigDict(frozen=True)

    model: str = "text-embedding-3-small"
    dimensions: int = Field(default=1536, ge=1)
    batch_size: int = Field(default=100, ge=1, le=2048)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0.0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0.0)


# Presets for the dependencies wired at startup.  Overridable per service
# through ``circuit_breaker_overrides`` (e.g. from config.yaml).
BREAKER_PRESETS: dict[str, dict[str, Any]] = {
    "openai": {
        "failure_threshold": 3,
        "success_threshold": 2,
        "open_timeout_ms": 60_000,
        "volume_threshold": 5,
        "window_ms": 30_000,
    },
    "vector_store": {
        "failure_threshold": 5,
        "success_threshold": 3,
        "open_timeout_ms": 30_000,
        "volume_threshold": 10,
        "window_ms": 60_000,
    },
    "redis": {
        "failure_threshold": 3,
        "success_threshold": 2,
        "open_timeout_ms": 10_000,
        "volume_threshold": 10,
        "window_ms": 60_000,
        "call_timeout_seconds": 2.0,
    },
}


class Settings(BaseSettings):
    """docchat application settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # === Embedding provider ===
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 100
    embedding_max_retries: int = 3
    embedding_retry_base_delay_seconds: float = 1.0

    # === Chunking ===
    chunk_size: int = 500
    chunk_overlap: int = 50
    min_chunk_chars: int = 50

    # === Uploads ===
    max_file_size_mb: int = 50
    upload_dir: str = "data/uploads"

    # === Retrieval ===
    retrieval_top_k: int = 5
    retrieval_threshold: float = 0.7
    retrieval_max_query_length: int = 1000

    # === Cache ===
    cache_ttl_seconds: int = 300
    cache_max_entries: int = 1000
    redis_url: str = ""

    # === Circuit breakers (defaults for services without a preset) ===
    circuit_failure_threshold: int = 5
    circuit_success_threshold: int = 2
    circuit_open_timeout_ms: int = 30_000
    circuit_volume_threshold: int = 10
    circuit_window_ms: int = 60_000
    circuit_half_open_limit: int = 3
    circuit_call_timeout_seconds: float = 30.0
    circuit_breaker_overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)

    # === Rate limiting ===
    rate_limit_enabled: bool = True
    rate_limit_quota: int = 50
    rate_limit_window_seconds: int = 3600

    # === Persistence ===
    chromadb_persist_dir: str = "./data/chromadb"
    chromadb_collection: str = "docchat_chunks"
    document_db_path: str = "data/documents.db"

    # === Orchestration ===
    session_max_concurrency: int = 2
    stale_processing_seconds: int = 1800

    # === App Config ===
    app_env: str = "development"
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Component config accessors
    # ------------------------------------------------------------------

    def chunking_config(self) -> ChunkingConfig:
        return ChunkingConfig(
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            min_chunk_chars=self.min_chunk_chars,
        )

    def retrieval_config(self) -> RetrievalConfig:
        return RetrievalConfig(
            default_top_k=self.retrieval_top_k,
            default_threshold=self.retrieval_threshold,
            max_query_length=self.retrieval_max_query_length,
        )

    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            ttl_seconds=self.cache_ttl_seconds,
            embedding_ttl_seconds=self.cache_ttl_seconds,
            max_entries=self.cache_max_entries,
            redis_url=self.redis_url,
        )

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            enabled=self.rate_limit_enabled,
            quota=self.rate_limit_quota,
            window_seconds=self.rate_limit_window_seconds,
        )

    def embedding_config(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            model=self.openai_embedding_model,
            dimensions=self.embedding_dimensions,
            batch_size=self.embedding_batch_size,
            max_retries=self.embedding_max_retries,
            retry_base_delay_seconds=self.embedding_retry_base_delay_seconds,
        )

    def circuit_breaker_config(self, service: str) -> CircuitBreakerConfig:
        """Return the breaker config for *service*.

        Resolution order: settings-wide defaults, then the built-in preset
        for known services, then ``circuit_breaker_overrides[service]``.
        """
        values: dict[str, Any] = {
            "failure_threshold": self.circuit_failure_threshold,
            "success_threshold": self.circuit_success_threshold,
            "open_timeout_ms": self.circuit_open_timeout_ms,
            "volume_threshold": self.circuit_volume_threshold,
            "window_ms": self.circuit_window_ms,
            "half_open_limit": self.circuit_half_open_limit,
            "call_timeout_seconds": self.circuit_call_timeout_seconds,
        }
        values.update(BREAKER_PRESETS.get(service, {}))
        values.update(self.circuit_breaker_overrides.get(service, {}))
        return CircuitBreakerConfig(**values)

    def validate_all(self) -> None:
        """Build every component config once so invalid ranges fail at startup."""
        self.chunking_config()
        self.retrieval_config()
        self.cache_config()
        self.rate_limit_config()
        self.embedding_config()
        for service in BREAKER_PRESETS:
            self.circuit_breaker_config(service)
