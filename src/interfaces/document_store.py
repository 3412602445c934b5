"""Abstract base class for the document record store.

Holds one row per uploaded document: ownership, upload session, content
hash and lifecycle status.  The store is the only place where a document's
status changes, always through :meth:`IDocumentStore.transition_status`,
a compare-and-set that refuses to overwrite a status it did not expect.
That makes duplicate or retried processing triggers harmless: only one of
them wins the ``pending → parsing`` transition.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.models.document import Document, DocumentStatus


# Concrete implementation: SQLiteDocumentStore (src/providers/document_store/)
class IDocumentStore(ABC):
    """Contract for persisting :class:`Document` rows."""

    @abstractmethod
    async def create_document(self, document: Document) -> Document:
        """Insert a new document row and return it."""

    @abstractmethod
    async def get_document(self, document_id: str) -> Document | None:
        """Return the document, or ``None`` if it does not exist."""

    @abstractmethod
    async def list_documents(
        self, owner_id: str, status: DocumentStatus | None = None
    ) -> list[Document]:
        """Return an owner's documents, oldest first, optionally by status."""

    @abstractmethod
    async def find_by_hash(
        self, owner_id: str, content_hash: str, exclude_id: str | None = None
    ) -> Document | None:
        """Return the owner's earliest live document with *content_hash*.

        Documents in ``error`` or ``skipped`` status do not count.
        """

    @abstractmethod
    async def transition_status(
        self,
        document_id: str,
        expected: DocumentStatus,
        new: DocumentStatus,
        **fields: object,
    ) -> Document:
        """Atomically move a document from *expected* to *new*.

        Extra *fields* (``error_message``, ``page_count``, ``chunk_count``,
        ``title``, ``author``) are written in the same statement.

        Raises
        ------
        src.utils.errors.PipelineError
            The transition is not allowed, or the document does not exist.
        src.utils.errors.StatusConflictError
            The stored status is not *expected*.
        """

    @abstractmethod
    async def get_pending_documents(self, session_id: str) -> list[Document]:
        """Return the session's ``pending`` documents in upload order."""

    @abstractmethod
    async def list_stale_documents(self, older_than_seconds: int) -> list[Document]:
        """Return in-progress documents not updated for *older_than_seconds*."""

    @abstractmethod
    async def list_documents_by_status(self, status: DocumentStatus) -> list[Document]:
        """Return every document in *status*, across owners."""

    @abstractmethod
    async def delete_document(self, document_id: str) -> bool:
        """Delete the row; return ``True`` if it existed."""
