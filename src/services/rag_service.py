"""Rate-limited entry point to ingestion and retrieval.

:class:`RAGService` is what an outer layer (HTTP handler, CLI, chat
backend) calls.  Each call is counted against the caller's quota first:
retrieval under the ``chat`` scope, ingestion triggers under ``ingest``.
A denied call raises :class:`RateLimitExceededError` before any pipeline
work starts; allowed calls are delegated unchanged.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import structlog

from src.models.document import Document
from src.models.pipeline import ProcessingStatus, SessionResult
from src.models.rag import RetrievalResponse
from src.pipeline.ingestion_orchestrator import IngestionOrchestrator
from src.services.resilience.rate_limiter import RateLimiter
from src.services.retrieval.retrieval_engine import RetrievalEngine

logger = structlog.get_logger(logger_name=__name__)

CHAT_SCOPE = "chat"
INGEST_SCOPE = "ingest"


class RAGService:
    """Gates the retrieval engine and ingestion orchestrator behind a rate limiter."""

    def __init__(
        self,
        retrieval_engine: RetrievalEngine,
        orchestrator: IngestionOrchestrator,
        rate_limiter: RateLimiter,
    ) -> None:
        self._retrieval_engine = retrieval_engine
        self._orchestrator = orchestrator
        self._rate_limiter = rate_limiter

    async def retrieve(
        self,
        owner_id: str,
        query: str,
        top_k: int | None = None,
        threshold: float | None = None,
        document_ids: list[str] | None = None,
    ) -> RetrievalResponse:
        """Count a ``chat`` request for *owner_id*, then run the retrieval."""
        await self._rate_limiter.enforce(owner_id, CHAT_SCOPE)
        return await self._retrieval_engine.retrieve(
            owner_id,
            query,
            top_k=top_k,
            threshold=threshold,
            document_ids=document_ids,
        )

    async def upload(
        self,
        owner_id: str,
        filename: str,
        data: bytes,
        session_id: str | None = None,
    ) -> Document:
        document = await self._orchestrator.register_upload(owner_id, filename, data, session_id)
        logger.debug("rag_upload_accepted", owner_id=owner_id, document_id=document.document_id)
        return document

    async def process_document(
        self,
        owner_id: str,
        document_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ProcessingStatus]:
        """Count an ``ingest`` request, then stream the document's progress."""
        await self._rate_limiter.enforce(owner_id, INGEST_SCOPE)
        async for status in self._orchestrator.process_document(owner_id, document_id, cancel_event):
            yield status

    async def reprocess_document(
        self,
        owner_id: str,
        document_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ProcessingStatus]:
        """Count an ``ingest`` request, then reset and re-run a failed document."""
        await self._rate_limiter.enforce(owner_id, INGEST_SCOPE)
        async for status in self._orchestrator.reprocess_document(
            owner_id, document_id, cancel_event
        ):
            yield status

    async def process_session(self, owner_id: str, session_id: str) -> SessionResult:
        """Count one ``ingest`` request, then drain *owner_id*'s pending uploads in a session."""
        await self._rate_limiter.enforce(owner_id, INGEST_SCOPE)
        return await self._orchestrator.process_session(session_id, owner_id=owner_id)
