"""Query → ranked, attributed passages.

The engine runs one retrieval in five steps:

1. **Validate** -- owner, query, ``top_k`` and threshold are checked before
   any external call.
2. **Search cache** -- the normalized query plus every result-shaping
   parameter forms the key; a hit returns immediately, without an
   embedding call.
3. **Query embedding** -- cached separately (``emb:`` keys) so different
   parameter combinations for the same question share one embedding.
4. **Similarity search** -- ``top_k * candidate_multiplier`` nearest chunks
   are fetched, filtered by the similarity threshold, sorted and sliced to
   ``top_k``.  Each hit gets its document's display name.
5. **Cache write** -- the result set is tagged with the documents it can
   depend on, so re-ingesting or deleting a document invalidates it.

An open circuit or exhausted retries anywhere in the chain surface as
:class:`SearchUnavailableError` ("Search is temporarily unavailable") with
``degraded=True``; :func:`classify_error` maps any failure to a user-safe
:class:`RetrievalErrorInfo`.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from src.config.settings import RetrievalConfig
from src.interfaces.document_store import IDocumentStore
from src.interfaces.vector_store_provider import IVectorStoreProvider
from src.models.rag import RetrievalErrorInfo, RetrievalResponse, ScoredChunk, SearchResult
from src.services.cache.two_tier_cache import TwoTierCache, document_tag, owner_tag
from src.services.embedding.embedding_client import EmbeddingClient
from src.services.retrieval.query_preprocessor import (
    build_embedding_cache_key,
    build_search_cache_key,
    normalize_query,
)
from src.utils.errors import (
    CircuitOpenError,
    EmbeddingError,
    InvalidRequestError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
    RateLimitExceededError,
    SearchUnavailableError,
    TransientProviderError,
    VectorStoreError,
)
from src.utils.logging import log_context

logger = structlog.get_logger(logger_name=__name__)

_SEARCH_UNAVAILABLE = "Search is temporarily unavailable"


class RetrievalEngine:
    """Turns a user query into ranked :class:`SearchResult` passages.

    Parameters
    ----------
    embedding_client:
        Embeds the normalized query.
    vector_store:
        Nearest-neighbour search over the owner's chunks.
    document_store:
        Resolves document display names for the hits.
    cache:
        Two-tier cache for query embeddings and result sets.
    config:
        Defaults and bounds for ``top_k``, threshold and query length.
    results_ttl:
        TTL in seconds for cached result sets (cache default when ``None``).
    embedding_ttl:
        TTL in seconds for cached query embeddings.
    timer:
        Monotonic clock used for ``latency_ms``.
    """

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        vector_store: IVectorStoreProvider,
        document_store: IDocumentStore,
        cache: TwoTierCache,
        config: RetrievalConfig | None = None,
        results_ttl: int | None = None,
        embedding_ttl: int | None = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._embedding_client = embedding_client
        self._vector_store = vector_store
        self._document_store = document_store
        self._cache = cache
        self._config = config or RetrievalConfig()
        self._results_ttl = results_ttl
        self._embedding_ttl = embedding_ttl
        self._timer = timer

    @property
    def config(self) -> RetrievalConfig:
        return self._config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        owner_id: str,
        query: str,
        top_k: int | None = None,
        threshold: float | None = None,
        document_ids: list[str] | None = None,
    ) -> RetrievalResponse:
        """Return up to *top_k* passages with similarity >= *threshold*.

        Raises
        ------
        InvalidRequestError
            Invalid owner, query, ``top_k`` or threshold.
        SearchUnavailableError
            The embedding provider or the vector store cannot serve the
            request right now.
        """
        with log_context(owner_id=owner_id):
            return await self._retrieve(owner_id, query, top_k, threshold, document_ids)

    async def _retrieve(
        self,
        owner_id: str,
        query: str,
        top_k: int | None,
        threshold: float | None,
        document_ids: list[str] | None,
    ) -> RetrievalResponse:
        started = self._timer()
        top_k = self._config.default_top_k if top_k is None else top_k
        threshold = self._config.default_threshold if threshold is None else threshold
        normalized = self._validate(owner_id, query, top_k, threshold)
        doc_filter = sorted(set(document_ids)) if document_ids else None

        cache_key = build_search_cache_key(owner_id, normalized, top_k, threshold, doc_filter)
        cached = await self._cache.get(cache_key)
        if isinstance(cached, dict) and "results" in cached:
            results = [SearchResult.model_validate(item) for item in cached["results"]]
            latency = self._elapsed_ms(started)
            logger.info(
                "retrieval_cache_hit",
                owner_id=owner_id,
                results=len(results),
                latency_ms=latency,
            )
            return RetrievalResponse(
                query=normalized, results=results, cached=True, latency_ms=latency
            )

        try:
            vector = await self._query_vector(normalized)
            scored = await self._vector_store.similarity_search(
                owner_id,
                vector,
                top_k * self._config.candidate_multiplier,
                document_ids=doc_filter,
            )
            results = await self._to_results(owner_id, scored, threshold, top_k)
        except (ProviderUnavailableError, TransientProviderError, VectorStoreError) as exc:
            logger.warning(
                "retrieval_unavailable",
                owner_id=owner_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise SearchUnavailableError(
                message=_SEARCH_UNAVAILABLE,
                provider_name=exc.provider_name,
                degraded=isinstance(exc, ProviderUnavailableError),
                retry_after=exc.retry_after if isinstance(exc, CircuitOpenError) else None,
            ) from exc

        await self._cache.set(
            cache_key,
            {"query": normalized, "results": [r.model_dump(mode="json") for r in results]},
            ttl=self._results_ttl,
            tags=self._tags_for(owner_id, results, doc_filter),
        )

        latency = self._elapsed_ms(started)
        logger.info(
            "retrieval_complete",
            owner_id=owner_id,
            candidates=len(scored),
            results=len(results),
            top_score=results[0].similarity if results else 0.0,
            latency_ms=latency,
        )
        return RetrievalResponse(query=normalized, results=results, cached=False, latency_ms=latency)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate(self, owner_id: str, query: str, top_k: int, threshold: float) -> str:
        if not owner_id or not owner_id.strip():
            raise InvalidRequestError(message="owner_id is required", field="owner_id")
        if query is None or len(query) > self._config.max_query_length:
            raise InvalidRequestError(
                message=f"Query must be at most {self._config.max_query_length} characters",
                field="query",
            )
        if isinstance(top_k, bool) or not 1 <= top_k <= self._config.max_top_k:
            raise InvalidRequestError(
                message=f"top_k must be between 1 and {self._config.max_top_k}",
                field="top_k",
            )
        if not 0.0 <= threshold <= 1.0:
            raise InvalidRequestError(message="threshold must be between 0 and 1", field="threshold")

        normalized = normalize_query(query)
        if not normalized:
            raise InvalidRequestError(message="Query must not be empty", field="query")
        return normalized

    async def _query_vector(self, normalized: str) -> list[float]:
        key = build_embedding_cache_key(normalized)
        cached = await self._cache.get(key)
        if isinstance(cached, list) and cached:
            return [float(value) for value in cached]

        vector = await self._embedding_client.embed_query(normalized)
        await self._cache.set(key, vector, ttl=self._embedding_ttl)
        return vector

    async def _to_results(
        self,
        owner_id: str,
        scored: list[ScoredChunk],
        threshold: float,
        top_k: int,
    ) -> list[SearchResult]:
        kept = sorted(
            (hit for hit in scored if hit.similarity >= threshold),
            key=lambda hit: hit.similarity,
            reverse=True,
        )

        names: dict[str, str | None] = {}
        results: list[SearchResult] = []
        for hit in kept:
            document_id = hit.chunk.document_id
            if document_id not in names:
                names[document_id] = await self._document_name(owner_id, document_id)
            name = names[document_id]
            # Chunks whose document row is gone are leftovers awaiting reconciliation.
            if name is None:
                continue
            results.append(
                SearchResult(
                    chunk_id=hit.chunk.chunk_id,
                    document_id=document_id,
                    document_name=name,
                    chunk_index=hit.chunk.chunk_index,
                    text=hit.chunk.text,
                    similarity=hit.similarity,
                    page_number=hit.chunk.page_number,
                )
            )
            if len(results) == top_k:
                break
        return results

    async def _document_name(self, owner_id: str, document_id: str) -> str | None:
        document = await self._document_store.get_document(document_id)
        if document is None or document.owner_id != owner_id:
            return None
        return document.display_name

    @staticmethod
    def _tags_for(
        owner_id: str, results: list[SearchResult], doc_filter: list[str] | None
    ) -> list[str]:
        if doc_filter:
            document_ids = set(doc_filter)
            tags: list[str] = []
        else:
            document_ids = set()
            tags = [owner_tag(owner_id)]
        document_ids.update(r.document_id for r in results)
        tags.extend(document_tag(document_id) for document_id in sorted(document_ids))
        return tags

    def _elapsed_ms(self, started: float) -> float:
        return round(max(0.0, (self._timer() - started) * 1000), 3)


def classify_error(exc: BaseException) -> RetrievalErrorInfo:
    """Map a retrieval failure to a user-safe :class:`RetrievalErrorInfo`.

    Codes: ``validation_error``, ``rate_limited``, ``timeout``,
    ``unavailable``, ``embedding_failed``, ``search_failed``, ``internal``.
    """
    if isinstance(exc, SearchUnavailableError):
        cause = exc.__cause__
        if isinstance(cause, ProviderTimeoutError):
            return RetrievalErrorInfo(
                code="timeout",
                message="Search operation timed out",
                recoverable=True,
            )
        if isinstance(cause, VectorStoreError):
            return RetrievalErrorInfo(code="search_failed", message=exc.message, recoverable=True)
        return RetrievalErrorInfo(
            code="unavailable",
            message=exc.message,
            recoverable=True,
            retry_after=exc.retry_after,
        )
    if isinstance(exc, InvalidRequestError):
        return RetrievalErrorInfo(code="validation_error", message=exc.message, recoverable=False)
    if isinstance(exc, RateLimitExceededError):
        return RetrievalErrorInfo(
            code="rate_limited",
            message=exc.message,
            recoverable=True,
            retry_after=float(exc.retry_after),
        )
    if isinstance(exc, ProviderTimeoutError):
        return RetrievalErrorInfo(
            code="timeout", message="Search operation timed out", recoverable=True
        )
    if isinstance(exc, CircuitOpenError):
        return RetrievalErrorInfo(
            code="unavailable",
            message=_SEARCH_UNAVAILABLE,
            recoverable=True,
            retry_after=exc.retry_after,
        )
    if isinstance(exc, ProviderUnavailableError):
        return RetrievalErrorInfo(code="unavailable", message=_SEARCH_UNAVAILABLE, recoverable=True)
    if isinstance(exc, (EmbeddingError, RateLimitError)):
        return RetrievalErrorInfo(
            code="embedding_failed",
            message="Embedding service failed to process the query",
            recoverable=True,
        )
    if isinstance(exc, VectorStoreError):
        return RetrievalErrorInfo(
            code="search_failed", message="Search service failed", recoverable=True
        )
    return RetrievalErrorInfo(
        code="internal", message="An unexpected error occurred", recoverable=False
    )
