"""Unit tests for the rate-limited RAGService facade."""

from __future__ import annotations

import pytest

from src.config.settings import RateLimitConfig, RetrievalConfig
from src.models.pipeline import ProcessingStage
from src.pipeline.ingestion_orchestrator import IngestionOrchestrator
from src.providers.cache.memory_cache import MemoryCacheProvider
from src.providers.document_store.sqlite_document_store import SQLiteDocumentStore
from src.services.cache.two_tier_cache import TwoTierCache
from src.services.embedding.embedding_client import EmbeddingClient
from src.services.rag_service import RAGService
from src.services.resilience.rate_limiter import RateLimiter
from src.services.retrieval.retrieval_engine import RetrievalEngine
from src.utils.errors import RateLimitExceededError
from tests.conftest import SAMPLE_TEXT, FakeEmbeddingProvider, InMemoryVectorStore


@pytest.fixture()
def service(
    orchestrator: IngestionOrchestrator,
    embedding_client: EmbeddingClient,
    vector_store: InMemoryVectorStore,
    document_store: SQLiteDocumentStore,
    cache: TwoTierCache,
) -> RAGService:
    engine = RetrievalEngine(
        embedding_client=embedding_client,
        vector_store=vector_store,
        document_store=document_store,
        cache=cache,
        config=RetrievalConfig(default_threshold=0.1),
    )
    limiter = RateLimiter(
        MemoryCacheProvider(max_size=100, ttl=None),
        RateLimitConfig(quota=2, window_seconds=60),
    )
    return RAGService(retrieval_engine=engine, orchestrator=orchestrator, rate_limiter=limiter)


class TestRAGService:
    @pytest.mark.asyncio
    async def test_upload_process_and_retrieve(self, service: RAGService) -> None:
        document = await service.upload("alice", "report.txt", SAMPLE_TEXT.encode())
        events = [e async for e in service.process_document("alice", document.document_id)]
        assert events[-1].stage is ProcessingStage.COMPLETE

        response = await service.retrieve("alice", "quarterly revenue growth")
        assert response.results
        assert response.results[0].document_id == document.document_id

    @pytest.mark.asyncio
    async def test_chat_quota_blocks_before_embedding(
        self, service: RAGService, fake_embedding_provider: FakeEmbeddingProvider
    ) -> None:
        await service.retrieve("alice", "first question")
        await service.retrieve("alice", "second question")
        calls = len(fake_embedding_provider.calls)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await service.retrieve("alice", "third question")
        assert exc_info.value.limit == 2
        assert len(fake_embedding_provider.calls) == calls

        # Other users keep their own quota.
        await service.retrieve("bob", "first question")

    @pytest.mark.asyncio
    async def test_ingest_scope_is_separate_from_chat(self, service: RAGService) -> None:
        for _ in range(2):
            await service.retrieve("alice", "question")
        document = await service.upload("alice", "report.txt", SAMPLE_TEXT.encode())
        events = [e async for e in service.process_document("alice", document.document_id)]
        assert events[-1].stage is ProcessingStage.COMPLETE

    @pytest.mark.asyncio
    async def test_ingest_quota(self, service: RAGService) -> None:
        documents = [
            await service.upload("alice", f"doc{i}.txt", f"Document number {i}.".encode())
            for i in range(3)
        ]
        for document in documents[:2]:
            async for _ in service.process_document("alice", document.document_id):
                pass
        with pytest.raises(RateLimitExceededError):
            async for _ in service.process_document("alice", documents[2].document_id):
                pass

    @pytest.mark.asyncio
    async def test_session_processing_counts_one_ingest_request(
        self, service: RAGService
    ) -> None:
        for name in ("a.txt", "b.txt"):
            await service.upload("alice", name, f"Contents of {name}.".encode(), session_id="s1")
        await service.upload("bob", "c.txt", b"Bob's own notes.", session_id="s1")

        result = await service.process_session("alice", "s1")
        assert result.processed_count == 2
        assert len(result.documents) == 2

        bob_result = await service.process_session("bob", "s1")
        assert bob_result.processed_count == 1
        again = await service.process_session("alice", "s1")
        assert again.documents == []
        with pytest.raises(RateLimitExceededError):
            await service.process_session("alice", "s1")

    @pytest.mark.asyncio
    async def test_reprocess_is_rate_limited(self, service: RAGService) -> None:
        broken = await service.upload("alice", "broken.pdf", b"%PDF-1.4 truncated")
        events = [e async for e in service.process_document("alice", broken.document_id)]
        assert events[-1].stage is ProcessingStage.ERROR

        retried = [e async for e in service.reprocess_document("alice", broken.document_id)]
        assert retried[-1].stage is ProcessingStage.ERROR

        with pytest.raises(RateLimitExceededError):
            async for _ in service.reprocess_document("alice", broken.document_id):
                pass
