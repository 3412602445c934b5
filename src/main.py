"""docchat application wiring.

Builds every provider and service explicitly and hands them out through a
single :class:`AppContext`.  Nothing is a module-level singleton: the CLI,
a web layer or a test builds its own context, and tests swap any external
dependency through ``overrides``.

Startup order:

1. Settings are loaded (``config/config.yaml`` + environment) and every
   component config is validated eagerly.
2. The circuit breaker registry is populated for each external
   dependency: ``openai``, ``vector_store`` and ``redis``.
3. Providers are built (SQLite, ChromaDB, OpenAI, Redis when configured)
   with their breakers, then the services that use them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError

from src.config.loader import load_settings
from src.config.settings import BREAKER_PRESETS, Settings
from src.interfaces.cache_provider import ICacheProvider
from src.interfaces.document_store import IDocumentStore
from src.interfaces.embedding_provider import IEmbeddingProvider
from src.interfaces.file_storage import IFileStorage
from src.interfaces.vector_store_provider import IVectorStoreProvider
from src.pipeline.ingestion_orchestrator import IngestionOrchestrator
from src.pipeline.progress_tracker import ProgressTracker
from src.providers.cache.memory_cache import MemoryCacheProvider
from src.providers.cache.redis_cache import RedisCacheProvider
from src.providers.document_store.sqlite_document_store import SQLiteDocumentStore
from src.providers.storage.local_file_storage import LocalFileStorage
from src.services.cache.two_tier_cache import TwoTierCache
from src.services.embedding.embedding_client import EmbeddingClient
from src.services.ingestion.chunker import SemanticChunker
from src.services.ingestion.text_extractor import TextExtractor
from src.services.rag_service import RAGService
from src.services.resilience.circuit_breaker import CircuitBreakerRegistry
from src.services.resilience.rate_limiter import RateLimiter
from src.services.retrieval.retrieval_engine import RetrievalEngine
from src.utils.errors import ConfigurationError

logger = structlog.get_logger(logger_name=__name__)

# Components that may be replaced through ``build_app_context(overrides=...)``.
OVERRIDABLE = frozenset(
    {"embedding_provider", "vector_store", "document_store", "file_storage", "shared_cache"}
)


@dataclass
class AppContext:
    """Long-lived container for every constructed service."""

    settings: Settings
    breakers: CircuitBreakerRegistry
    cache: TwoTierCache
    rate_limiter: RateLimiter
    document_store: IDocumentStore
    vector_store: IVectorStoreProvider
    file_storage: IFileStorage
    embedding_client: EmbeddingClient
    progress_tracker: ProgressTracker
    orchestrator: IngestionOrchestrator
    retrieval_engine: RetrievalEngine
    rag_service: RAGService
    closables: list[Any] = field(default_factory=list)

    async def close(self) -> None:
        """Release network clients opened at startup."""
        for resource in self.closables:
            await resource.close()
        self.closables.clear()
        logger.info("app_context_closed")


# ---------------------------------------------------------------------------
# Provider builders
# ---------------------------------------------------------------------------


def _build_embedding_provider(app_settings: Settings) -> IEmbeddingProvider:
    if not app_settings.openai_api_key:
        raise ConfigurationError(
            message="OPENAI_API_KEY is required for embeddings",
            provider_name="openai",
        )
    from src.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider

    return OpenAIEmbeddingProvider(
        settings=app_settings,
        request_timeout=app_settings.circuit_breaker_config("openai").call_timeout_seconds,
    )


def _build_vector_store(app_settings: Settings, registry: CircuitBreakerRegistry) -> IVectorStoreProvider:
    from src.providers.vector_store.chromadb_provider import ChromaDBProvider

    return ChromaDBProvider(
        persist_directory=app_settings.chromadb_persist_dir,
        collection_name=app_settings.chromadb_collection,
        breaker=registry.get("vector_store"),
    )


def _build_shared_cache(app_settings: Settings) -> ICacheProvider | None:
    if not app_settings.redis_url:
        return None
    return RedisCacheProvider(url=app_settings.redis_url)


# ---------------------------------------------------------------------------
# Application context
# ---------------------------------------------------------------------------


def build_app_context(
    settings: Settings | None = None,
    overrides: dict[str, Any] | None = None,
) -> AppContext:
    """Construct every provider and service with its dependencies injected.

    Parameters
    ----------
    settings:
        Application settings; loaded from ``config/config.yaml`` and the
        environment when omitted.
    overrides:
        Replacement components keyed by name (see :data:`OVERRIDABLE`).
        ``shared_cache`` may be ``None`` to force a single-tier cache.

    Raises
    ------
    ConfigurationError
        Invalid configuration, an unknown override name, or a missing
        OpenAI API key when no embedding provider override is given.
    """
    app_settings = settings or load_settings()
    overrides = dict(overrides or {})
    unknown = set(overrides) - OVERRIDABLE
    if unknown:
        raise ConfigurationError(message=f"Unknown overrides: {sorted(unknown)}")

    try:
        app_settings.validate_all()
        chunking = app_settings.chunking_config()
        retrieval = app_settings.retrieval_config()
        cache_config = app_settings.cache_config()
        rate_limit = app_settings.rate_limit_config()
        embedding = app_settings.embedding_config()
    except ValidationError as exc:
        raise ConfigurationError(message=f"Invalid configuration: {exc}") from exc

    # -- Circuit breakers, one per external dependency --
    registry = CircuitBreakerRegistry()
    for service in BREAKER_PRESETS:
        registry.register(service, app_settings.circuit_breaker_config(service))

    closables: list[Any] = []

    # -- Cache tiers --
    shared_cache = (
        overrides["shared_cache"]
        if "shared_cache" in overrides
        else _build_shared_cache(app_settings)
    )
    if shared_cache is not None:
        closables.append(shared_cache)
    cache = TwoTierCache(
        local=MemoryCacheProvider(max_size=cache_config.max_entries, ttl=cache_config.ttl_seconds),
        shared=shared_cache,
        breaker=registry.get("redis"),
        default_ttl=cache_config.ttl_seconds,
    )
    # Counters live in the shared store when there is one, so every
    # instance sees the same windows.
    rate_limiter = RateLimiter(
        store=shared_cache or MemoryCacheProvider(max_size=100_000, ttl=None),
        config=rate_limit,
    )

    # -- Persistence --
    document_store = overrides.get("document_store") or SQLiteDocumentStore(
        db_path=app_settings.document_db_path,
        breaker=registry.get("vector_store"),
    )
    vector_store = overrides.get("vector_store") or _build_vector_store(app_settings, registry)
    file_storage = overrides.get("file_storage") or LocalFileStorage(app_settings.upload_dir)

    # -- Embeddings --
    embedding_provider = overrides.get("embedding_provider") or _build_embedding_provider(
        app_settings
    )
    embedding_client = EmbeddingClient(
        provider=embedding_provider,
        breaker=registry.get("openai"),
        config=embedding,
    )

    # -- Pipelines --
    progress_tracker = ProgressTracker()
    orchestrator = IngestionOrchestrator(
        document_store=document_store,
        vector_store=vector_store,
        extractor=TextExtractor(max_file_size_mb=app_settings.max_file_size_mb),
        chunker=SemanticChunker.from_config(chunking),
        embedding_client=embedding_client,
        file_storage=file_storage,
        cache=cache,
        progress_tracker=progress_tracker,
        session_max_concurrency=app_settings.session_max_concurrency,
    )
    retrieval_engine = RetrievalEngine(
        embedding_client=embedding_client,
        vector_store=vector_store,
        document_store=document_store,
        cache=cache,
        config=retrieval,
        results_ttl=cache_config.ttl_seconds,
        embedding_ttl=cache_config.embedding_ttl_seconds,
    )
    rag_service = RAGService(
        retrieval_engine=retrieval_engine,
        orchestrator=orchestrator,
        rate_limiter=rate_limiter,
    )

    logger.info(
        "app_context_built",
        breakers=registry.names(),
        shared_cache=shared_cache is not None,
        embedding_provider=embedding_provider.get_provider_name(),
        vector_store=vector_store.get_provider_name(),
    )
    return AppContext(
        settings=app_settings,
        breakers=registry,
        cache=cache,
        rate_limiter=rate_limiter,
        document_store=document_store,
        vector_store=vector_store,
        file_storage=file_storage,
        embedding_client=embedding_client,
        progress_tracker=progress_tracker,
        orchestrator=orchestrator,
        retrieval_engine=retrieval_engine,
        rag_service=rag_service,
        closables=closables,
    )
