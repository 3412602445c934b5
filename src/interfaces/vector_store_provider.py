"""Abstract base class for vector-store service providers.

Defines the contract for storing and querying embedded document chunks.
Every query is scoped to one owner, and optionally to a subset of that
owner's documents.

Similarity convention: stores index with **cosine distance** and return
``similarity = 1 - distance`` clamped to ``[0, 1]``.  Ingestion and
retrieval both rely on this, so a backend with a different native metric
must convert to it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.models.rag import DocumentChunk, ScoredChunk


# Concrete implementation: ChromaDBProvider (src/providers/vector_store/)
class IVectorStoreProvider(ABC):
    """Contract for vector-store services used by the RAG pipeline."""

    @abstractmethod
    async def replace_chunks(
        self,
        document_id: str,
        owner_id: str,
        chunks: list[DocumentChunk],
        embeddings: list[list[float]],
    ) -> int:
        """Replace the whole chunk set of *document_id* (all-or-nothing).

        On failure the previously stored set stays in place and no new
        chunk remains visible.

        Returns
        -------
        int
            The number of chunks now stored for the document.

        Raises
        ------
        src.utils.errors.InvalidRequestError
            If ``len(chunks) != len(embeddings)`` or a chunk belongs to
            another document.
        src.utils.errors.VectorStoreError
            If the store operation fails.
        """

    @abstractmethod
    async def similarity_search(
        self,
        owner_id: str,
        query_vector: list[float],
        top_k: int,
        document_ids: list[str] | None = None,
    ) -> list[ScoredChunk]:
        """Return up to *top_k* nearest chunks, most similar first.

        Only chunks of *owner_id* are considered; when *document_ids* is
        given, only chunks of those documents.
        """

    @abstractmethod
    async def get_document_chunks(self, document_id: str) -> list[DocumentChunk]:
        """Return a document's chunks ordered by ``chunk_index``."""

    @abstractmethod
    async def delete_document_chunks(self, document_id: str) -> int:
        """Delete every chunk of *document_id* and return how many were removed."""

    @abstractmethod
    async def list_document_ids(self, owner_id: str | None = None) -> set[str]:
        """Return the ids of documents that have at least one stored chunk."""

    @abstractmethod
    async def count_chunks(self, owner_id: str | None = None) -> int:
        """Return the number of stored chunks (optionally for one owner)."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier, e.g. ``"chromadb"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the store is initialised and usable."""
