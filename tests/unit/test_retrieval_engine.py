"""Unit tests for RetrievalEngine and classify_error."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
import structlog

from src.config.settings import CircuitBreakerConfig, EmbeddingConfig, RetrievalConfig
from src.models.document import Document, DocumentStatus
from src.models.rag import DocumentChunk
from src.providers.document_store.sqlite_document_store import SQLiteDocumentStore
from src.services.cache.two_tier_cache import TwoTierCache
from src.services.embedding.embedding_client import EmbeddingClient
from src.services.resilience.circuit_breaker import CircuitBreaker
from src.services.retrieval.retrieval_engine import RetrievalEngine, classify_error
from src.utils.errors import (
    CircuitOpenError,
    EmbeddingError,
    InvalidRequestError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
    RateLimitExceededError,
    SearchUnavailableError,
    VectorStoreError,
)
from tests.conftest import FakeEmbeddingProvider, InMemoryVectorStore

_T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)

PASSAGES = {
    "d1": [
        "Quarterly revenue grew twelve percent.",
        "Operating costs stayed flat this year.",
    ],
    "d2": [
        "Customer churn dropped below three percent.",
        "Revenue from enterprise customers doubled.",
    ],
}


async def _seed(
    document_store: SQLiteDocumentStore,
    vector_store: InMemoryVectorStore,
    provider: FakeEmbeddingProvider,
    owner_id: str = "alice",
    passages: dict[str, list[str]] = PASSAGES,
) -> None:
    for offset, (document_id, texts) in enumerate(passages.items()):
        created = _T0 + timedelta(minutes=offset)
        await document_store.create_document(
            Document(
                document_id=document_id,
                owner_id=owner_id,
                session_id="s1",
                filename=f"{document_id}.txt",
                file_size=100,
                storage_path=f"/uploads/{document_id}.txt",
                content_hash=f"hash-{document_id}",
                status=DocumentStatus.COMPLETE,
                chunk_count=len(texts),
                title="Annual Report" if document_id == "d1" else None,
                created_at=created,
                updated_at=created,
            )
        )
        chunks = [
            DocumentChunk(
                chunk_id=DocumentChunk.make_id(document_id, "g1", index),
                document_id=document_id,
                owner_id=owner_id,
                chunk_index=index,
                text=text,
                page_number=1,
            )
            for index, text in enumerate(texts)
        ]
        await vector_store.replace_chunks(
            document_id, owner_id, chunks, [provider.vector_for(t) for t in texts]
        )


@pytest.fixture()
def engine(
    embedding_client: EmbeddingClient,
    vector_store: InMemoryVectorStore,
    document_store: SQLiteDocumentStore,
    cache: TwoTierCache,
) -> RetrievalEngine:
    return RetrievalEngine(
        embedding_client=embedding_client,
        vector_store=vector_store,
        document_store=document_store,
        cache=cache,
        config=RetrievalConfig(default_top_k=3, default_threshold=0.1),
    )


@pytest_asyncio.fixture
async def seeded(
    document_store: SQLiteDocumentStore,
    vector_store: InMemoryVectorStore,
    fake_embedding_provider: FakeEmbeddingProvider,
) -> None:
    await _seed(document_store, vector_store, fake_embedding_provider)


# ======================================================================
# Validation
# ======================================================================


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("kwargs", "field"),
        [
            ({"owner_id": "", "query": "revenue"}, "owner_id"),
            ({"owner_id": "alice", "query": "   "}, "query"),
            ({"owner_id": "alice", "query": "!!! ***"}, "query"),
            ({"owner_id": "alice", "query": "x" * 1001}, "query"),
            ({"owner_id": "alice", "query": "revenue", "top_k": 0}, "top_k"),
            ({"owner_id": "alice", "query": "revenue", "top_k": 21}, "top_k"),
            ({"owner_id": "alice", "query": "revenue", "threshold": 1.5}, "threshold"),
            ({"owner_id": "alice", "query": "revenue", "threshold": -0.1}, "threshold"),
        ],
    )
    async def test_rejects_invalid_input(
        self,
        engine: RetrievalEngine,
        fake_embedding_provider: FakeEmbeddingProvider,
        kwargs: dict,
        field: str,
    ) -> None:
        with pytest.raises(InvalidRequestError) as exc_info:
            await engine.retrieve(**kwargs)
        assert exc_info.value.field == field
        assert fake_embedding_provider.calls == []


# ======================================================================
# Search
# ======================================================================


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_ranked_and_attributed(
        self, engine: RetrievalEngine, seeded: None
    ) -> None:
        response = await engine.retrieve("alice", "Quarterly revenue grew twelve percent.")
        assert response.query == "quarterly revenue grew twelve percent."
        assert response.cached is False
        top = response.results[0]
        assert top.chunk_id == "d1:g1:0"
        assert top.document_name == "Annual Report"
        assert top.similarity == pytest.approx(1.0)
        assert top.page_number == 1
        similarities = [r.similarity for r in response.results]
        assert similarities == sorted(similarities, reverse=True)
        assert all(s >= 0.1 for s in similarities)
        assert response.total_results <= 3

    @pytest.mark.asyncio
    async def test_threshold_filters_results(self, engine: RetrievalEngine, seeded: None) -> None:
        response = await engine.retrieve(
            "alice", "Quarterly revenue grew twelve percent.", threshold=0.99
        )
        assert [r.chunk_id for r in response.results] == ["d1:g1:0"]

    @pytest.mark.asyncio
    async def test_no_match_returns_empty(self, engine: RetrievalEngine, seeded: None) -> None:
        response = await engine.retrieve("alice", "zebra", threshold=0.9)
        assert response.results == []

    @pytest.mark.asyncio
    async def test_top_k_and_candidate_multiplier(
        self,
        engine: RetrievalEngine,
        vector_store: InMemoryVectorStore,
        seeded: None,
    ) -> None:
        requested: list[int] = []
        original = vector_store.similarity_search

        async def _spy(owner_id, query_vector, top_k, document_ids=None):
            requested.append(top_k)
            return await original(owner_id, query_vector, top_k, document_ids)

        vector_store.similarity_search = _spy
        response = await engine.retrieve("alice", "revenue percent", top_k=1, threshold=0.0)
        assert requested == [2]
        assert response.total_results == 1

    @pytest.mark.asyncio
    async def test_owner_is_bound_to_log_context_during_search(
        self,
        engine: RetrievalEngine,
        vector_store: InMemoryVectorStore,
        seeded: None,
    ) -> None:
        bound: list[dict] = []
        original = vector_store.similarity_search

        async def _spy(owner_id, query_vector, top_k, document_ids=None):
            bound.append(structlog.contextvars.get_contextvars())
            return await original(owner_id, query_vector, top_k, document_ids)

        vector_store.similarity_search = _spy
        await engine.retrieve("alice", "revenue percent")
        assert len(bound) == 1
        assert bound[0]["owner_id"] == "alice"
        assert "owner_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_document_filter(self, engine: RetrievalEngine, seeded: None) -> None:
        response = await engine.retrieve(
            "alice", "revenue", threshold=0.0, document_ids=["d2", "d2"]
        )
        assert {r.document_id for r in response.results} == {"d2"}

    @pytest.mark.asyncio
    async def test_other_owners_are_invisible(self, engine: RetrievalEngine, seeded: None) -> None:
        response = await engine.retrieve("bob", "Quarterly revenue grew twelve percent.")
        assert response.results == []

    @pytest.mark.asyncio
    async def test_chunks_without_document_row_are_dropped(
        self,
        engine: RetrievalEngine,
        document_store: SQLiteDocumentStore,
        seeded: None,
    ) -> None:
        await document_store.delete_document("d1")
        response = await engine.retrieve("alice", "revenue percent", threshold=0.0)
        assert response.results
        assert all(r.document_id == "d2" for r in response.results)


# ======================================================================
# Caching
# ======================================================================


class TestCaching:
    @pytest.mark.asyncio
    async def test_repeat_query_is_served_from_cache(
        self,
        engine: RetrievalEngine,
        fake_embedding_provider: FakeEmbeddingProvider,
        seeded: None,
    ) -> None:
        first = await engine.retrieve("alice", "What is the revenue?")
        second = await engine.retrieve("alice", "  what is the REVENUE?  ")
        assert second.cached is True
        assert second.results == first.results
        assert len(fake_embedding_provider.calls) == 1

    @pytest.mark.asyncio
    async def test_query_embedding_shared_across_parameters(
        self,
        engine: RetrievalEngine,
        fake_embedding_provider: FakeEmbeddingProvider,
        seeded: None,
    ) -> None:
        await engine.retrieve("alice", "revenue", top_k=2)
        response = await engine.retrieve("alice", "revenue", top_k=3)
        assert response.cached is False
        assert len(fake_embedding_provider.calls) == 1

    @pytest.mark.asyncio
    async def test_document_invalidation_drops_cached_results(
        self, engine: RetrievalEngine, cache: TwoTierCache, seeded: None
    ) -> None:
        await engine.retrieve("alice", "revenue")
        await cache.invalidate_document("d1", "alice")
        response = await engine.retrieve("alice", "revenue")
        assert response.cached is False

    @pytest.mark.asyncio
    async def test_filtered_search_invalidated_by_filtered_document(
        self, engine: RetrievalEngine, cache: TwoTierCache, seeded: None
    ) -> None:
        await engine.retrieve("alice", "zebra", threshold=0.9, document_ids=["d2"])
        await cache.invalidate_document("d2")
        response = await engine.retrieve("alice", "zebra", threshold=0.9, document_ids=["d2"])
        assert response.cached is False


# ======================================================================
# Degraded dependencies
# ======================================================================


class TestUnavailable:
    @pytest.mark.asyncio
    async def test_vector_store_failure(
        self, engine: RetrievalEngine, vector_store: InMemoryVectorStore, seeded: None
    ) -> None:
        vector_store.fail_search = True
        with pytest.raises(SearchUnavailableError) as exc_info:
            await engine.retrieve("alice", "revenue")
        assert exc_info.value.message == "Search is temporarily unavailable"
        assert exc_info.value.degraded is False
        assert classify_error(exc_info.value).code == "search_failed"

    @pytest.mark.asyncio
    async def test_embedding_outage_is_degraded(
        self,
        engine: RetrievalEngine,
        fake_embedding_provider: FakeEmbeddingProvider,
        seeded: None,
    ) -> None:
        fake_embedding_provider.failures = [RateLimitError() for _ in range(3)]
        with pytest.raises(SearchUnavailableError) as exc_info:
            await engine.retrieve("alice", "revenue")
        assert exc_info.value.degraded is True
        info = classify_error(exc_info.value)
        assert info.code == "unavailable"
        assert info.recoverable is True

    @pytest.mark.asyncio
    async def test_open_circuit_reports_retry_after(
        self,
        fake_embedding_provider: FakeEmbeddingProvider,
        vector_store: InMemoryVectorStore,
        document_store: SQLiteDocumentStore,
        cache: TwoTierCache,
    ) -> None:
        breaker = CircuitBreaker("openai", CircuitBreakerConfig(open_timeout_ms=60_000))
        breaker.force_open()
        engine = RetrievalEngine(
            embedding_client=EmbeddingClient(
                fake_embedding_provider, breaker=breaker, config=EmbeddingConfig(dimensions=64)
            ),
            vector_store=vector_store,
            document_store=document_store,
            cache=cache,
        )
        with pytest.raises(SearchUnavailableError) as exc_info:
            await engine.retrieve("alice", "revenue")
        assert exc_info.value.degraded is True
        assert exc_info.value.retry_after == pytest.approx(60.0, abs=1.0)
        assert isinstance(exc_info.value.__cause__, CircuitOpenError)
        assert fake_embedding_provider.calls == []


class TestClassifyError:
    @pytest.mark.parametrize(
        ("error", "code", "recoverable"),
        [
            (InvalidRequestError(message="bad top_k"), "validation_error", False),
            (RateLimitExceededError(retry_after=30, limit=50), "rate_limited", True),
            (ProviderTimeoutError(), "timeout", True),
            (CircuitOpenError(service="openai", retry_after=12), "unavailable", True),
            (ProviderUnavailableError(), "unavailable", True),
            (EmbeddingError(), "embedding_failed", True),
            (RateLimitError(), "embedding_failed", True),
            (VectorStoreError(), "search_failed", True),
            (RuntimeError("boom"), "internal", False),
        ],
    )
    def test_codes(self, error: BaseException, code: str, recoverable: bool) -> None:
        info = classify_error(error)
        assert info.code == code
        assert info.recoverable is recoverable

    def test_internal_errors_do_not_leak_details(self) -> None:
        info = classify_error(RuntimeError("password=hunter2"))
        assert "hunter2" not in info.message

    def test_timeout_cause_of_search_unavailable(self) -> None:
        try:
            try:
                raise ProviderTimeoutError()
            except ProviderTimeoutError as cause:
                raise SearchUnavailableError(degraded=False) from cause
        except SearchUnavailableError as exc:
            info = classify_error(exc)
        assert info.code == "timeout"

    def test_rate_limited_retry_after(self) -> None:
        info = classify_error(RateLimitExceededError(retry_after=30, limit=50))
        assert info.retry_after == 30.0
