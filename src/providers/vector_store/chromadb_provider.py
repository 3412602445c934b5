"""ChromaDB vector store provider adapter.

Wraps ``chromadb.PersistentClient`` to implement :class:`IVectorStoreProvider`.
The collection is created with an HNSW index in cosine space, so query
distances convert to similarity as ``1 - distance`` (clamped to [0, 1]).

ChromaDB's client is synchronous.  Every call runs in a worker thread via
``asyncio.to_thread`` inside the ``vector_store`` circuit breaker, which
also applies the call timeout.  Backend exceptions are wrapped as
:class:`VectorStoreError` before they reach the breaker, so the breaker
counts them as failures and callers see one error type.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from typing import Any, TypeVar

# Disable ChromaDB telemetry before importing chromadb.  The env var is
# respected by some versions; disabling PostHog directly covers the rest,
# and Settings(anonymized_telemetry=False) is passed to the client below.
os.environ["ANONYMIZED_TELEMETRY"] = "False"

import posthog

posthog.disabled = True

import chromadb
import structlog

from src.interfaces.vector_store_provider import IVectorStoreProvider
from src.models.rag import DocumentChunk, ScoredChunk
from src.services.resilience.circuit_breaker import CircuitBreaker
from src.utils.errors import DocChatError, InvalidRequestError, VectorStoreError

logger = structlog.get_logger(logger_name=__name__)

_T = TypeVar("_T")

_PROVIDER = "chromadb"
_UPSERT_BATCH = 500


class _NoopEmbeddingFunction(chromadb.EmbeddingFunction[list[str]]):
    """No-op embedding function that prevents ChromaDB from loading a model.

    docchat always passes pre-computed embeddings, so ChromaDB's built-in
    embedding is never invoked.  Without this, ChromaDB downloads its
    default ONNX model on collection creation.
    """

    def __call__(self, input: list[str]) -> list[list[float]]:
        raise NotImplementedError(
            "docchat uses pre-computed embeddings; "
            "ChromaDB's built-in embedding should never be called."
        )

    def name(self) -> str:
        """Return function name (required by ChromaDB's EmbeddingFunction protocol)."""
        return "noop_precomputed"


class ChromaDBProvider(IVectorStoreProvider):
    """Vector store provider backed by ChromaDB with local persistence.

    Parameters
    ----------
    persist_directory:
        Directory for ChromaDB's on-disk storage.
    collection_name:
        Collection holding every owner's chunks (scoped by metadata).
    breaker:
        Circuit breaker wrapping every backend call.
    client:
        Pre-built ChromaDB client (tests pass an ``EphemeralClient``).
    """

    def __init__(
        self,
        persist_directory: str = "./data/chromadb",
        collection_name: str = "docchat_chunks",
        breaker: CircuitBreaker | None = None,
        client: Any | None = None,
    ) -> None:
        self._breaker = breaker
        self._collection_name = collection_name
        self._client = client or chromadb.PersistentClient(
            path=persist_directory,
            settings=chromadb.config.Settings(anonymized_telemetry=False),
        )
        # Newer ChromaDB versions reject a different embedding function for
        # an existing collection; reopen without one in that case.
        try:
            self._collection = self._client.get_or_create_collection(
                name=collection_name,
                metadata={"hnsw:space": "cosine"},
                embedding_function=_NoopEmbeddingFunction(),
            )
        except ValueError:
            self._collection = self._client.get_or_create_collection(
                name=collection_name,
                metadata={"hnsw:space": "cosine"},
            )

    # ------------------------------------------------------------------
    # IVectorStoreProvider implementation
    # ------------------------------------------------------------------

    async def replace_chunks(
        self,
        document_id: str,
        owner_id: str,
        chunks: list[DocumentChunk],
        embeddings: list[list[float]],
    ) -> int:
        """Write the new chunk set, then delete the previous one.

        New chunks carry a fresh generation in their ids, so they never
        overwrite the old set.  If any upsert fails, the new ids written so
        far are deleted and the old set is left untouched.
        """
        if len(chunks) != len(embeddings):
            raise InvalidRequestError(
                message=(
                    f"chunks and embeddings length mismatch: {len(chunks)} != {len(embeddings)}"
                ),
                provider_name=_PROVIDER,
            )
        if any(c.document_id != document_id or c.owner_id != owner_id for c in chunks):
            raise InvalidRequestError(
                message="All chunks must belong to the document being replaced",
                provider_name=_PROVIDER,
            )

        def _replace() -> int:
            previous = self._collection.get(where={"document_id": document_id}, include=[])
            previous_ids = set(previous["ids"] or [])
            new_ids = [c.chunk_id for c in chunks]

            written: list[str] = []
            try:
                for start in range(0, len(chunks), _UPSERT_BATCH):
                    batch = chunks[start : start + _UPSERT_BATCH]
                    ids = [c.chunk_id for c in batch]
                    self._collection.upsert(
                        ids=ids,
                        embeddings=embeddings[start : start + _UPSERT_BATCH],
                        documents=[c.text for c in batch],
                        metadatas=[self._chunk_to_metadata(c) for c in batch],
                    )
                    written.extend(ids)
            except Exception:
                if written:
                    self._collection.delete(ids=written)
                raise

            stale = sorted(previous_ids - set(new_ids))
            if stale:
                self._collection.delete(ids=stale)
            return len(new_ids)

        stored = await self._run("replace_chunks", _replace)
        logger.info(
            "chromadb_chunks_replaced",
            document_id=document_id,
            count=stored,
        )
        return stored

    async def similarity_search(
        self,
        owner_id: str,
        query_vector: list[float],
        top_k: int,
        document_ids: list[str] | None = None,
    ) -> list[ScoredChunk]:
        if top_k <= 0:
            return []
        if document_ids is not None and not document_ids:
            return []

        where: dict[str, Any] = {"owner_id": owner_id}
        if document_ids:
            where = {"$and": [{"owner_id": owner_id}, {"document_id": {"$in": list(document_ids)}}]}

        def _query() -> dict[str, Any] | None:
            available = self._collection.count()
            if available == 0:
                return None
            return self._collection.query(
                query_embeddings=[query_vector],
                n_results=min(top_k, available),
                where=where,
                include=["documents", "metadatas", "distances"],
            )

        results = await self._run("query", _query)
        if not results or not results.get("ids") or not results["ids"][0]:
            return []

        ids = results["ids"][0]
        documents = results["documents"][0] if results.get("documents") else [""] * len(ids)
        metadatas = results["metadatas"][0] if results.get("metadatas") else [{}] * len(ids)
        distances = results["distances"][0] if results.get("distances") else [1.0] * len(ids)

        # During a replacement two generations of a chunk can coexist
        # briefly; keep the best-scoring copy per (document, index).
        best: dict[tuple[str, int], ScoredChunk] = {}
        for chunk_id, text, meta, distance in zip(ids, documents, metadatas, distances, strict=True):
            similarity = max(0.0, min(1.0, 1.0 - float(distance)))
            chunk = self._metadata_to_chunk(chunk_id, meta, text)
            slot = (chunk.document_id, chunk.chunk_index)
            if slot not in best or best[slot].similarity < similarity:
                best[slot] = ScoredChunk(chunk=chunk, similarity=similarity)

        scored = sorted(best.values(), key=lambda s: s.similarity, reverse=True)
        logger.debug(
            "chromadb_query",
            owner_id=owner_id,
            raw_results=len(ids),
            results_count=len(scored),
            top_score=scored[0].similarity if scored else 0.0,
        )
        return scored

    async def get_document_chunks(self, document_id: str) -> list[DocumentChunk]:
        def _get() -> dict[str, Any]:
            return self._collection.get(
                where={"document_id": document_id},
                include=["documents", "metadatas"],
            )

        result = await self._run("get_document_chunks", _get)
        chunks = [
            self._metadata_to_chunk(chunk_id, meta, text)
            for chunk_id, text, meta in zip(
                result["ids"] or [],
                result["documents"] or [],
                result["metadatas"] or [],
                strict=True,
            )
        ]
        return sorted(chunks, key=lambda c: c.chunk_index)

    async def delete_document_chunks(self, document_id: str) -> int:
        def _delete() -> int:
            existing = self._collection.get(where={"document_id": document_id}, include=[])
            ids = existing["ids"] or []
            if ids:
                self._collection.delete(ids=ids)
            return len(ids)

        deleted = await self._run("delete_document_chunks", _delete)
        logger.info("chromadb_delete_document", document_id=document_id, deleted_count=deleted)
        return deleted

    async def list_document_ids(self, owner_id: str | None = None) -> set[str]:
        def _list() -> set[str]:
            kwargs: dict[str, Any] = {"include": ["metadatas"]}
            if owner_id:
                kwargs["where"] = {"owner_id": owner_id}
            result = self._collection.get(**kwargs)
            return {
                str(meta["document_id"])
                for meta in result["metadatas"] or []
                if meta and "document_id" in meta
            }

        return await self._run("list_document_ids", _list)

    async def count_chunks(self, owner_id: str | None = None) -> int:
        def _count() -> int:
            if owner_id is None:
                return self._collection.count()
            result = self._collection.get(where={"owner_id": owner_id}, include=[])
            return len(result["ids"] or [])

        return await self._run("count", _count)

    def get_provider_name(self) -> str:
        return _PROVIDER

    def is_available(self) -> bool:
        return self._collection is not None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run(self, operation: str, fn: Callable[[], _T]) -> _T:
        async def _invoke() -> _T:
            try:
                return await asyncio.to_thread(fn)
            except DocChatError:
                raise
            except Exception as exc:
                raise VectorStoreError(
                    message=f"ChromaDB {operation} failed: {exc}",
                    provider_name=_PROVIDER,
                ) from exc

        if self._breaker is None:
            return await _invoke()
        return await self._breaker.call(_invoke)

    @staticmethod
    def _chunk_to_metadata(chunk: DocumentChunk) -> dict[str, str | int]:
        meta: dict[str, str | int] = {
            "owner_id": chunk.owner_id,
            "document_id": chunk.document_id,
            "chunk_index": chunk.chunk_index,
            "token_count": chunk.token_count,
        }
        # ChromaDB metadata values cannot be None.
        if chunk.page_number is not None:
            meta["page_number"] = chunk.page_number
        return meta

    @staticmethod
    def _metadata_to_chunk(chunk_id: str, meta: dict[str, Any] | None, text: str | None) -> DocumentChunk:
        meta = meta or {}
        page = meta.get("page_number")
        return DocumentChunk(
            chunk_id=chunk_id,
            document_id=str(meta.get("document_id", "")),
            owner_id=str(meta.get("owner_id", "")),
            chunk_index=int(meta.get("chunk_index", 0)),
            text=text or "",
            token_count=int(meta.get("token_count", 0)),
            page_number=int(page) if page is not None else None,
        )
