"""RAG pipeline data models.

Defines Pydantic v2 models for everything that flows between the ingestion
and retrieval components: extracted text, chunker output, persisted chunks,
embedding batches, scored search hits and the final retrieval response.
All models use frozen config to enforce immutability.

Pipeline overview:

    1. EXTRACTION: document bytes → :class:`ExtractedText`
    2. CHUNKING:   text → ordered :class:`TextChunk` list
    3. EMBEDDING:  chunk texts → :class:`EmbeddingBatchResult`
    4. STORAGE:    :class:`DocumentChunk` + vectors in ChromaDB
    5. RETRIEVAL:  query → :class:`ScoredChunk` hits → :class:`RetrievalResponse`
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ExtractedText(BaseModel):
    """Plain text and structural metadata pulled out of a raw document."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(description="Normalized plain text of the whole document.")
    page_count: int = Field(default=1, ge=0)
    title: str | None = None
    author: str | None = None
    creation_date: str | None = None
    page_offsets: list[int] = Field(
        default_factory=list,
        description="Character offset in ``text`` at which each page begins.",
    )

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class TextChunk(BaseModel):
    """One segment produced by the semantic chunker."""

    model_config = ConfigDict(frozen=True)

    chunk_index: int = Field(ge=0)
    text: str
    start_offset: int = Field(
        ge=0, description="Best-effort character offset of the chunk in the source text."
    )
    token_count: int = Field(default=0, ge=0)
    page_number: int | None = None


class DocumentChunk(BaseModel):
    """A chunk as persisted in the vector store.

    ``chunk_id`` is ``{document_id}:{generation}:{chunk_index}``.  Each
    ingestion run writes a new generation, so a replacement set is written
    completely before the previous one is deleted.
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    document_id: str
    owner_id: str
    chunk_index: int = Field(ge=0)
    text: str
    token_count: int = Field(default=0, ge=0)
    page_number: int | None = None

    @staticmethod
    def make_id(document_id: str, generation: str, chunk_index: int) -> str:
        return f"{document_id}:{generation}:{chunk_index}"


class ScoredChunk(BaseModel):
    """A vector-store hit with its similarity converted from cosine distance."""

    model_config = ConfigDict(frozen=True)

    chunk: DocumentChunk
    similarity: float = Field(ge=0.0, le=1.0)


class EmbeddingBatchResult(BaseModel):
    """Vectors for a list of texts plus usage accounting."""

    model_config = ConfigDict(frozen=True)

    embeddings: list[list[float]]
    tokens_used: int = Field(default=0, ge=0)
    model: str = ""
    dimensions: int = Field(default=0, ge=0)
    batch_count: int = Field(default=0, ge=0)


class SearchResult(BaseModel):
    """A ranked passage returned to the generation step."""

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    document_id: str
    document_name: str
    chunk_index: int = Field(ge=0)
    text: str
    similarity: float = Field(ge=0.0, le=1.0)
    page_number: int | None = None


class RetrievalResponse(BaseModel):
    """The result of one retrieval call."""

    model_config = ConfigDict(frozen=True)

    query: str = Field(description="The normalized query that was searched.")
    results: list[SearchResult] = Field(default_factory=list)
    cached: bool = False
    latency_ms: float = Field(default=0.0, ge=0.0)

    @property
    def total_results(self) -> int:
        return len(self.results)


class RetrievalErrorInfo(BaseModel):
    """User-safe classification of a retrieval failure."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    recoverable: bool = False
    retry_after: float | None = None
