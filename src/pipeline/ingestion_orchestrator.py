"""Per-document ingestion pipeline: extract → chunk → embed → store.

:class:`IngestionOrchestrator` owns the document lifecycle.  Every status
change goes through the document store's compare-and-set
``transition_status``, so a duplicate or retried trigger for the same
document loses the ``pending → parsing`` race and simply reports the
current status instead of processing twice.

``process_document`` is an async generator of
:class:`~src.models.pipeline.ProcessingStatus` events:

    parsing 0% → chunking 30% → embedding 70% (per batch, up to 99%)
    → storing 100% → complete 100%

A document whose content hash matches an earlier live upload of the same
owner is marked ``skipped`` before any work starts.  Any stage failure
moves the document to ``error`` with a user-safe message and ends the
stream with a terminal ``error`` event; nothing already written is rolled
back here, :meth:`IngestionOrchestrator.reconcile` cleans up leftovers.

Cancellation is honoured between stages and between embedding batches:
setting ``cancel_event`` or closing the stream marks the document
``error`` with "Processing cancelled".

Documents of one upload session are processed strictly one after the
other (:meth:`process_session`); separate sessions may run side by side
(:meth:`process_sessions`).
"""

from __future__ import annotations

import asyncio
import math
import uuid
from collections.abc import AsyncIterator, Callable

import structlog

from src.interfaces.document_store import IDocumentStore
from src.interfaces.file_storage import IFileStorage
from src.interfaces.vector_store_provider import IVectorStoreProvider
from src.models.document import Document, DocumentStatus
from src.models.pipeline import (
    STAGE_PROGRESS,
    ProcessingStage,
    ProcessingStatus,
    ReconcileReport,
    SessionResult,
)
from src.models.rag import DocumentChunk, ExtractedText, TextChunk
from src.pipeline.progress_tracker import ProgressTracker
from src.services.cache.two_tier_cache import TwoTierCache
from src.services.embedding.embedding_client import EmbeddingClient
from src.services.ingestion.chunker import SemanticChunker
from src.services.ingestion.text_extractor import TextExtractor
from src.utils.concurrency import throttled_gather
from src.utils.errors import (
    ChunkValidationError,
    DocChatError,
    DocumentError,
    InvalidRequestError,
    ProviderUnavailableError,
    StatusConflictError,
    TransientProviderError,
    VectorStoreError,
)
from src.utils.logging import log_context
from src.utils.text import content_hash

logger = structlog.get_logger(logger_name=__name__)

CANCELLED_MESSAGE = "Processing cancelled"
STALE_MESSAGE = "Processing did not finish in time"

_EMBEDDING_PROGRESS_CEILING = 99.0


class _Cancelled(Exception):
    """Raised internally when the caller's cancel event is set."""


def _new_id() -> str:
    return uuid.uuid4().hex


class IngestionOrchestrator:
    """Sequences extraction, chunking, embedding and storage per document.

    Parameters
    ----------
    document_store:
        Document rows and their compare-and-set status.
    vector_store:
        Chunk and embedding persistence.
    extractor:
        Bytes → text.
    chunker:
        Text → overlapping chunks.
    embedding_client:
        Batched, retried embedding calls.
    file_storage:
        Raw upload bytes.
    cache:
        Search cache, invalidated when a document's chunks change.
    progress_tracker:
        Latest status per document for pollers.
    session_max_concurrency:
        Sessions processed at once by :meth:`process_sessions`.
    id_factory:
        Generates document, session and chunk-generation ids.
    """

    def __init__(
        self,
        document_store: IDocumentStore,
        vector_store: IVectorStoreProvider,
        extractor: TextExtractor,
        chunker: SemanticChunker,
        embedding_client: EmbeddingClient,
        file_storage: IFileStorage,
        cache: TwoTierCache,
        progress_tracker: ProgressTracker | None = None,
        session_max_concurrency: int = 2,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._document_store = document_store
        self._vector_store = vector_store
        self._extractor = extractor
        self._chunker = chunker
        self._embedding_client = embedding_client
        self._file_storage = file_storage
        self._cache = cache
        self._progress_tracker = progress_tracker or ProgressTracker()
        self._session_max_concurrency = session_max_concurrency
        self._id_factory = id_factory

    @property
    def progress_tracker(self) -> ProgressTracker:
        return self._progress_tracker

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def register_upload(
        self,
        owner_id: str,
        filename: str,
        data: bytes,
        session_id: str | None = None,
    ) -> Document:
        """Validate and store an upload, creating its ``pending`` document row.

        Raises
        ------
        InvalidRequestError
            Missing owner, unsupported extension, empty or oversized file.
        """
        if not owner_id or not owner_id.strip():
            raise InvalidRequestError(message="owner_id is required", field="owner_id")
        self._extractor.validate_upload(filename, len(data))

        document_id = self._id_factory()
        storage_path = await self._file_storage.save(owner_id, document_id, filename, data)
        document = Document(
            document_id=document_id,
            owner_id=owner_id,
            session_id=session_id or self._id_factory(),
            filename=filename,
            file_size=len(data),
            storage_path=storage_path,
            content_hash=content_hash(data),
        )
        try:
            await self._document_store.create_document(document)
        except DocChatError:
            await self._file_storage.delete(storage_path)
            raise

        await self._progress_tracker.update(
            self._status(document_id, ProcessingStage.PENDING, "Waiting to be processed")
        )
        logger.info(
            "upload_registered",
            document_id=document_id,
            owner_id=owner_id,
            session_id=document.session_id,
            filename=filename,
            size=len(data),
        )
        return document

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_document(
        self,
        owner_id: str,
        document_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ProcessingStatus]:
        """Run the pipeline for one document, yielding progress as it goes.

        The last event is terminal (``complete``, ``error`` or ``skipped``)
        unless another trigger already owns the document, in which case the
        single event is that document's current status.

        Raises
        ------
        InvalidRequestError
            The document does not exist or belongs to another owner.
        """
        document = await self._owned_document(owner_id, document_id)
        log = logger.bind(document_id=document_id, owner_id=owner_id)

        duplicate = await self._earlier_duplicate(document)
        if duplicate is not None:
            try:
                await self._document_store.transition_status(
                    document_id, DocumentStatus.PENDING, DocumentStatus.SKIPPED
                )
            except StatusConflictError:
                yield await self._current_status(document_id)
                return
            log.info("document_skipped_duplicate", duplicate_of=duplicate.document_id)
            yield await self._emit(
                document_id,
                ProcessingStage.SKIPPED,
                f"Duplicate of {duplicate.display_name}; skipped",
            )
            return

        try:
            await self._document_store.transition_status(
                document_id, DocumentStatus.PENDING, DocumentStatus.PARSING
            )
        except StatusConflictError as exc:
            log.info("document_already_claimed", status=exc.actual)
            yield await self._current_status(document_id)
            return

        current = DocumentStatus.PARSING
        try:
            yield await self._emit(document_id, ProcessingStage.PARSING, "Extracting text")
            extracted = await self._extract(document)
            self._check_cancelled(cancel_event)

            await self._advance(
                document_id,
                current,
                DocumentStatus.CHUNKING,
                page_count=extracted.page_count,
                title=extracted.title,
                author=extracted.author,
            )
            current = DocumentStatus.CHUNKING
            yield await self._emit(document_id, ProcessingStage.CHUNKING, "Splitting text into chunks")
            chunks = await asyncio.to_thread(self._chunk, extracted)
            self._check_cancelled(cancel_event)

            await self._advance(document_id, current, DocumentStatus.EMBEDDING)
            current = DocumentStatus.EMBEDDING
            yield await self._emit(
                document_id, ProcessingStage.EMBEDDING, f"Embedding {len(chunks)} chunks"
            )
            embeddings: list[list[float]] = []
            texts = [chunk.text for chunk in chunks]
            batch_size = self._embedding_client.batch_size
            total_batches = math.ceil(len(texts) / batch_size)
            for number, start in enumerate(range(0, len(texts), batch_size), start=1):
                self._check_cancelled(cancel_event)
                result = await self._embedding_client.embed_texts(texts[start : start + batch_size])
                embeddings.extend(result.embeddings)
                low, _ = STAGE_PROGRESS[ProcessingStage.EMBEDDING]
                yield await self._emit(
                    document_id,
                    ProcessingStage.EMBEDDING,
                    f"Embedded batch {number} of {total_batches}",
                    percent=low + (_EMBEDDING_PROGRESS_CEILING - low) * number / total_batches,
                )
            self._check_cancelled(cancel_event)

            yield await self._emit(document_id, ProcessingStage.STORING, "Storing chunks")
            stored = await self._store(document, chunks, embeddings)
            await self._cache.invalidate_document(document_id, owner_id)
            await self._advance(document_id, current, DocumentStatus.COMPLETE, chunk_count=stored)
            current = DocumentStatus.COMPLETE

            log.info("document_processed", chunks=stored, pages=extracted.page_count)
            yield await self._emit(
                document_id,
                ProcessingStage.COMPLETE,
                f"Processed {stored} chunks",
                chunk_count=stored,
            )
        except _Cancelled:
            log.info("document_processing_cancelled", stage=current.value)
            yield await self._fail(document_id, current, CANCELLED_MESSAGE)
        except (GeneratorExit, asyncio.CancelledError):
            if not current.is_terminal:
                log.info("document_processing_abandoned", stage=current.value)
                await self._fail(document_id, current, CANCELLED_MESSAGE)
            raise
        except Exception as exc:
            message = self._user_message(exc)
            if isinstance(exc, DocChatError):
                log.warning(
                    "document_processing_failed",
                    stage=current.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            else:
                log.exception("document_processing_crashed", stage=current.value)
            yield await self._fail(document_id, current, message)

    async def reprocess_document(
        self,
        owner_id: str,
        document_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ProcessingStatus]:
        """Reset a failed document to ``pending`` and process it again.

        Raises
        ------
        InvalidRequestError
            The document is unknown, not owned by *owner_id*, or not in
            ``error``/``pending`` status.
        """
        document = await self._owned_document(owner_id, document_id)
        if document.status is DocumentStatus.ERROR:
            await self._document_store.transition_status(
                document_id, DocumentStatus.ERROR, DocumentStatus.PENDING
            )
            logger.info("document_reset_for_reprocessing", document_id=document_id)
        elif document.status is not DocumentStatus.PENDING:
            raise InvalidRequestError(
                message=f"Only failed documents can be reprocessed (status is {document.status.value})",
                field="document_id",
            )

        async for status in self.process_document(owner_id, document_id, cancel_event):
            yield status

    async def process_session(
        self, session_id: str, owner_id: str | None = None
    ) -> SessionResult:
        """Process every pending document of a session, one at a time.

        A failing document never stops the batch; its terminal ``error``
        status is recorded and the next document starts.  Log events emitted
        while a document is processed, including those of the embedding and
        vector-store layers, carry its session, owner and document ids.
        With *owner_id*, documents of other owners in the session are left
        untouched.
        """
        pending = await self._document_store.get_pending_documents(session_id)
        if owner_id is not None:
            pending = [d for d in pending if d.owner_id == owner_id]
        logger.info("session_processing_started", session_id=session_id, documents=len(pending))

        finals: list[ProcessingStatus] = []
        for document in pending:
            final: ProcessingStatus | None = None
            try:
                with log_context(
                    session_id=session_id,
                    owner_id=document.owner_id,
                    document_id=document.document_id,
                ):
                    async for status in self.process_document(
                        document.owner_id, document.document_id
                    ):
                        final = status
            except DocChatError as exc:
                logger.error(
                    "session_document_failed",
                    session_id=session_id,
                    document_id=document.document_id,
                    error=str(exc),
                )
                final = self._status(
                    document.document_id,
                    ProcessingStage.ERROR,
                    self._user_message(exc),
                    error=self._user_message(exc),
                )
            if final is not None:
                finals.append(final)

        result = SessionResult(
            session_id=session_id,
            processed_count=sum(1 for s in finals if s.stage is ProcessingStage.COMPLETE),
            error_count=sum(1 for s in finals if s.stage is ProcessingStage.ERROR),
            skipped_count=sum(1 for s in finals if s.stage is ProcessingStage.SKIPPED),
            documents=finals,
        )
        logger.info(
            "session_processing_finished",
            session_id=session_id,
            processed=result.processed_count,
            errors=result.error_count,
            skipped=result.skipped_count,
        )
        return result

    async def process_sessions(
        self,
        session_ids: list[str],
        max_concurrency: int | None = None,
    ) -> list[SessionResult]:
        """Process several sessions concurrently, each one sequentially inside.

        A session that fails as a whole (its queue cannot be read) yields an
        empty :class:`SessionResult`; the failure is logged.
        """
        outcomes = await throttled_gather(
            [self.process_session(session_id) for session_id in session_ids],
            max_concurrency=max_concurrency or self._session_max_concurrency,
        )
        results: list[SessionResult] = []
        for session_id, outcome in zip(session_ids, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("session_processing_failed", session_id=session_id, error=str(outcome))
                results.append(SessionResult(session_id=session_id))
            else:
                results.append(outcome)
        return results

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def delete_document(self, owner_id: str, document_id: str) -> bool:
        """Delete a document's chunks, row and stored bytes.

        Returns ``False`` when the document does not exist for this owner.
        """
        document = await self._document_store.get_document(document_id)
        if document is None or document.owner_id != owner_id:
            return False

        removed_chunks = await self._vector_store.delete_document_chunks(document_id)
        await self._cache.invalidate_document(document_id, owner_id)
        await self._document_store.delete_document(document_id)
        await self._file_storage.delete(document.storage_path)
        self._progress_tracker.forget(document_id)

        logger.info(
            "document_deleted",
            document_id=document_id,
            owner_id=owner_id,
            chunks_removed=removed_chunks,
        )
        return True

    async def reconcile(self, stale_after_seconds: int = 1800) -> ReconcileReport:
        """Fail documents stuck in progress and remove chunks nobody owns.

        1. Documents in ``parsing``/``chunking``/``embedding`` whose row has
           not changed for *stale_after_seconds* are moved to ``error``.
        2. Chunk sets of ``error`` documents, and of documents whose row no
           longer exists, are deleted.
        """
        stale_marked = 0
        for document in await self._document_store.list_stale_documents(stale_after_seconds):
            try:
                await self._document_store.transition_status(
                    document.document_id,
                    document.status,
                    DocumentStatus.ERROR,
                    error_message=STALE_MESSAGE,
                )
            except StatusConflictError:
                continue
            stale_marked += 1
            await self._progress_tracker.update(
                self._status(
                    document.document_id,
                    ProcessingStage.ERROR,
                    STALE_MESSAGE,
                    error=STALE_MESSAGE,
                )
            )

        failed = {
            d.document_id: d.owner_id
            for d in await self._document_store.list_documents_by_status(DocumentStatus.ERROR)
        }
        removed = 0
        for document_id in sorted(await self._vector_store.list_document_ids()):
            owner_id = failed.get(document_id)
            if owner_id is None:
                if await self._document_store.get_document(document_id) is not None:
                    continue
            await self._vector_store.delete_document_chunks(document_id)
            await self._cache.invalidate_document(document_id, owner_id)
            removed += 1

        report = ReconcileReport(stale_marked_error=stale_marked, orphan_chunk_sets_removed=removed)
        logger.info(
            "reconcile_complete",
            stale_marked_error=report.stale_marked_error,
            orphan_chunk_sets_removed=report.orphan_chunk_sets_removed,
        )
        return report

    async def get_status(self, document_id: str) -> ProcessingStatus | None:
        """Return the latest tracked status, falling back to the stored row."""
        tracked = self._progress_tracker.get_status(document_id)
        if tracked is not None:
            return tracked
        document = await self._document_store.get_document(document_id)
        if document is None:
            return None
        return self._status_from_document(document)

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    async def _extract(self, document: Document) -> ExtractedText:
        try:
            data = await self._file_storage.read(document.storage_path)
        except FileNotFoundError as exc:
            raise DocumentError(message="Uploaded file is missing from storage") from exc
        return await asyncio.to_thread(self._extractor.extract, data, document.filename)

    def _chunk(self, extracted: ExtractedText) -> list[TextChunk]:
        chunks = self._chunker.chunk(extracted.text, extracted.page_offsets)
        if chunks:
            self._chunker.validate(chunks)
        return chunks

    async def _store(
        self,
        document: Document,
        chunks: list[TextChunk],
        embeddings: list[list[float]],
    ) -> int:
        generation = self._id_factory()[:12]
        records = [
            DocumentChunk(
                chunk_id=DocumentChunk.make_id(document.document_id, generation, chunk.chunk_index),
                document_id=document.document_id,
                owner_id=document.owner_id,
                chunk_index=chunk.chunk_index,
                text=chunk.text,
                token_count=chunk.token_count,
                page_number=chunk.page_number,
            )
            for chunk in chunks
        ]
        return await self._vector_store.replace_chunks(
            document.document_id, document.owner_id, records, embeddings
        )

    async def _advance(
        self,
        document_id: str,
        expected: DocumentStatus,
        new: DocumentStatus,
        **fields: object,
    ) -> None:
        await self._document_store.transition_status(document_id, expected, new, **fields)

    async def _fail(
        self, document_id: str, current: DocumentStatus, message: str
    ) -> ProcessingStatus:
        """Move the document to ``error`` and return the terminal status event."""
        try:
            await self._document_store.transition_status(
                document_id, current, DocumentStatus.ERROR, error_message=message
            )
        except DocChatError as exc:
            # The row moved on (deleted, reconciled) or the store is down;
            # reconciliation catches whatever is left.
            logger.warning(
                "document_error_status_not_recorded",
                document_id=document_id,
                error=str(exc),
            )
        return await self._emit(document_id, ProcessingStage.ERROR, message, error=message)

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise _Cancelled()

    async def _owned_document(self, owner_id: str, document_id: str) -> Document:
        document = await self._document_store.get_document(document_id)
        if document is None or document.owner_id != owner_id:
            raise InvalidRequestError(
                message=f"Document {document_id} not found", field="document_id"
            )
        return document

    async def _earlier_duplicate(self, document: Document) -> Document | None:
        if document.status is not DocumentStatus.PENDING:
            return None
        other = await self._document_store.find_by_hash(
            document.owner_id, document.content_hash, exclude_id=document.document_id
        )
        if other is None:
            return None
        # Only the earliest upload of some content is processed.
        if (other.created_at, other.document_id) < (document.created_at, document.document_id):
            return other
        return None

    async def _current_status(self, document_id: str) -> ProcessingStatus:
        tracked = self._progress_tracker.get_status(document_id)
        if tracked is not None and tracked.stage is not ProcessingStage.PENDING:
            return tracked
        document = await self._document_store.get_document(document_id)
        if document is None:
            return self._status(
                document_id, ProcessingStage.ERROR, "Document was deleted", error="Document was deleted"
            )
        return self._status_from_document(document)

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    async def _emit(
        self,
        document_id: str,
        stage: ProcessingStage,
        message: str = "",
        percent: float | None = None,
        error: str | None = None,
        chunk_count: int | None = None,
    ) -> ProcessingStatus:
        status = self._status(document_id, stage, message, percent, error, chunk_count)
        await self._progress_tracker.update(status)
        return status

    @staticmethod
    def _status(
        document_id: str,
        stage: ProcessingStage,
        message: str = "",
        percent: float | None = None,
        error: str | None = None,
        chunk_count: int | None = None,
    ) -> ProcessingStatus:
        if percent is None:
            percent = STAGE_PROGRESS[stage][0]
        return ProcessingStatus(
            document_id=document_id,
            stage=stage,
            percent=max(0.0, min(100.0, percent)),
            message=message,
            error=error,
            chunk_count=chunk_count,
        )

    def _status_from_document(self, document: Document) -> ProcessingStatus:
        stage = ProcessingStage(document.status.value)
        return self._status(
            document.document_id,
            stage,
            document.error_message or "",
            error=document.error_message if stage is ProcessingStage.ERROR else None,
            chunk_count=document.chunk_count if stage is ProcessingStage.COMPLETE else None,
        )

    @staticmethod
    def _user_message(exc: BaseException) -> str:
        if isinstance(exc, DocumentError):
            return exc.message
        if isinstance(exc, ChunkValidationError):
            return "Document text could not be split into valid chunks"
        if isinstance(exc, (ProviderUnavailableError, TransientProviderError)):
            return "Embedding service is temporarily unavailable. Please retry later"
        if isinstance(exc, VectorStoreError):
            return "Storage is temporarily unavailable. Please retry later"
        if isinstance(exc, StatusConflictError):
            return "Document status changed during processing"
        if isinstance(exc, DocChatError):
            return exc.message
        return "Processing failed due to an internal error"
