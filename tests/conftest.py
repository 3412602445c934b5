"""Shared pytest fixtures for the docchat test suite."""

from __future__ import annotations

import hashlib
import math
import re
from pathlib import Path

import fitz
import pytest

from src.config.settings import CircuitBreakerConfig, EmbeddingConfig, Settings
from src.interfaces.embedding_provider import IEmbeddingProvider
from src.interfaces.vector_store_provider import IVectorStoreProvider
from src.models.rag import DocumentChunk, ScoredChunk
from src.pipeline.ingestion_orchestrator import IngestionOrchestrator
from src.pipeline.progress_tracker import ProgressTracker
from src.providers.cache.memory_cache import MemoryCacheProvider
from src.providers.document_store.sqlite_document_store import SQLiteDocumentStore
from src.providers.storage.local_file_storage import LocalFileStorage
from src.services.cache.two_tier_cache import TwoTierCache
from src.services.embedding.embedding_client import EmbeddingClient
from src.services.ingestion.chunker import SemanticChunker
from src.services.ingestion.text_extractor import TextExtractor
from src.services.resilience.circuit_breaker import CircuitBreaker
from src.utils.errors import InvalidRequestError, VectorStoreError

_WORD_RE = re.compile(r"\w+")

FAKE_DIMENSION = 64


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEmbeddingProvider(IEmbeddingProvider):
    """Deterministic bag-of-words embeddings.

    Each word hashes to one dimension; the vector is L2-normalised, so
    texts sharing words have a positive cosine similarity and identical
    texts have similarity 1.0.
    """

    def __init__(self, dimension: int = FAKE_DIMENSION) -> None:
        self._dimension = dimension
        self.calls: list[list[str]] = []
        self.failures: list[Exception] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return [self.vector_for(text) for text in texts]

    def vector_for(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        for word in _WORD_RE.findall(text.lower()):
            digest = hashlib.sha256(word.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "big") % self._dimension] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            vector[0] = 1.0
            return vector
        return [v / norm for v in vector]

    def get_dimension(self) -> int:
        return self._dimension

    def get_provider_name(self) -> str:
        return "fake_embedding"

    def get_model_name(self) -> str:
        return "fake-bow"

    def is_available(self) -> bool:
        return True


class InMemoryVectorStore(IVectorStoreProvider):
    """Cosine-similarity vector store kept in a dict, for pipeline tests."""

    def __init__(self) -> None:
        self.rows: dict[str, tuple[DocumentChunk, list[float]]] = {}
        self.fail_next_replace = False
        self.fail_search = False

    async def replace_chunks(
        self,
        document_id: str,
        owner_id: str,
        chunks: list[DocumentChunk],
        embeddings: list[list[float]],
    ) -> int:
        if len(chunks) != len(embeddings):
            raise InvalidRequestError(message="chunks and embeddings differ in length")
        if self.fail_next_replace:
            self.fail_next_replace = False
            raise VectorStoreError(message="write failed", provider_name="memory")
        for chunk_id in [cid for cid, (c, _) in self.rows.items() if c.document_id == document_id]:
            del self.rows[chunk_id]
        for chunk, vector in zip(chunks, embeddings):
            self.rows[chunk.chunk_id] = (chunk, vector)
        return len(chunks)

    async def similarity_search(
        self,
        owner_id: str,
        query_vector: list[float],
        top_k: int,
        document_ids: list[str] | None = None,
    ) -> list[ScoredChunk]:
        if self.fail_search:
            raise VectorStoreError(message="search failed", provider_name="memory")
        hits = []
        for chunk, vector in self.rows.values():
            if chunk.owner_id != owner_id:
                continue
            if document_ids is not None and chunk.document_id not in document_ids:
                continue
            score = sum(a * b for a, b in zip(query_vector, vector))
            hits.append(ScoredChunk(chunk=chunk, similarity=max(0.0, min(1.0, score))))
        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return hits[:top_k]

    async def get_document_chunks(self, document_id: str) -> list[DocumentChunk]:
        chunks = [c for c, _ in self.rows.values() if c.document_id == document_id]
        return sorted(chunks, key=lambda c: c.chunk_index)

    async def delete_document_chunks(self, document_id: str) -> int:
        doomed = [cid for cid, (c, _) in self.rows.items() if c.document_id == document_id]
        for chunk_id in doomed:
            del self.rows[chunk_id]
        return len(doomed)

    async def list_document_ids(self, owner_id: str | None = None) -> set[str]:
        return {
            c.document_id
            for c, _ in self.rows.values()
            if owner_id is None or c.owner_id == owner_id
        }

    async def count_chunks(self, owner_id: str | None = None) -> int:
        return sum(1 for c, _ in self.rows.values() if owner_id is None or c.owner_id == owner_id)

    def get_provider_name(self) -> str:
        return "memory"

    def is_available(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Sample documents
# ---------------------------------------------------------------------------


def make_pdf(pages: list[str], title: str | None = None, author: str | None = None) -> bytes:
    """Build an in-memory PDF with one text block per page."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_textbox(fitz.Rect(50, 50, 550, 800), text, fontsize=10)
    if title or author:
        doc.set_metadata({"title": title or "", "author": author or ""})
    data = doc.tobytes()
    doc.close()
    return data


SAMPLE_TEXT = (
    "Quarterly revenue grew twelve percent compared with the previous year. "
    "Most of the growth came from the enterprise subscription segment.\n\n"
    "Operating costs stayed flat because the hiring plan was postponed. "
    "The board approved a new budget for research and development.\n\n"
    "Customer churn dropped below three percent for the first time. "
    "Support response times improved after the new ticketing system launched."
)


@pytest.fixture
def sample_text() -> str:
    return SAMPLE_TEXT


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def document_store(tmp_path: Path) -> SQLiteDocumentStore:
    return SQLiteDocumentStore(db_path=str(tmp_path / "documents.db"))


@pytest.fixture
def file_storage(tmp_path: Path) -> LocalFileStorage:
    return LocalFileStorage(str(tmp_path / "uploads"))


@pytest.fixture
def cache() -> TwoTierCache:
    return TwoTierCache(local=MemoryCacheProvider(max_size=100, ttl=300))


@pytest.fixture
def embedding_client(fake_embedding_provider: FakeEmbeddingProvider) -> EmbeddingClient:
    async def _no_sleep(_seconds: float) -> None:
        return None

    return EmbeddingClient(
        provider=fake_embedding_provider,
        breaker=CircuitBreaker("openai", CircuitBreakerConfig(call_timeout_seconds=5.0)),
        config=EmbeddingConfig(dimensions=FAKE_DIMENSION, batch_size=4, max_retries=2),
        sleep=_no_sleep,
    )


@pytest.fixture
def chunker() -> SemanticChunker:
    return SemanticChunker(chunk_size=40, chunk_overlap=8, min_chunk_chars=10)


@pytest.fixture
def orchestrator(
    document_store: SQLiteDocumentStore,
    vector_store: InMemoryVectorStore,
    chunker: SemanticChunker,
    embedding_client: EmbeddingClient,
    file_storage: LocalFileStorage,
    cache: TwoTierCache,
) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        document_store=document_store,
        vector_store=vector_store,
        extractor=TextExtractor(max_file_size_mb=1),
        chunker=chunker,
        embedding_client=embedding_client,
        file_storage=file_storage,
        cache=cache,
        progress_tracker=ProgressTracker(),
    )


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing every on-disk store into *tmp_path*."""
    return Settings(
        openai_api_key="",
        redis_url="",
        upload_dir=str(tmp_path / "uploads"),
        chromadb_persist_dir=str(tmp_path / "chromadb"),
        document_db_path=str(tmp_path / "documents.db"),
        embedding_dimensions=FAKE_DIMENSION,
        chunk_size=60,
        chunk_overlap=10,
        min_chunk_chars=10,
        retrieval_threshold=0.1,
    )
