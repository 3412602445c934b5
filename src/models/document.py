"""Document lifecycle models.

A :class:`Document` row is created when bytes are uploaded and is mutated
only by the ingestion orchestrator.  Its ``status`` moves forward through
``pending → parsing → chunking → embedding → complete``; ``error`` can be
reached from any non-terminal state and ``skipped`` only from ``pending``
(duplicate-content detection happens before any processing starts).

Transitions are validated here, in one place, and applied atomically by the
document store with a compare-and-set on the current status.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DocumentStatus(str, Enum):  # noqa: UP042 — StrEnum requires Python 3.11+
    """Persisted lifecycle status of an uploaded document."""

    PENDING = "pending"
    PARSING = "parsing"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    COMPLETE = "complete"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    @property
    def is_in_progress(self) -> bool:
        return self in _IN_PROGRESS

    def can_transition_to(self, new: DocumentStatus) -> bool:
        """Return ``True`` if moving from this status to *new* is allowed.

        Forward-only along the happy path, ``error`` from any non-terminal
        state, ``skipped`` only from ``pending``.  An errored document may
        be reset to ``pending`` for an explicit reprocess.
        """
        if self is DocumentStatus.ERROR:
            return new is DocumentStatus.PENDING
        if self.is_terminal:
            return False
        if new is DocumentStatus.ERROR:
            return True
        if new is DocumentStatus.SKIPPED:
            return self is DocumentStatus.PENDING
        if new in _FORWARD_ORDER and self in _FORWARD_ORDER:
            return _FORWARD_ORDER.index(new) > _FORWARD_ORDER.index(self)
        return False


_FORWARD_ORDER = (
    DocumentStatus.PENDING,
    DocumentStatus.PARSING,
    DocumentStatus.CHUNKING,
    DocumentStatus.EMBEDDING,
    DocumentStatus.COMPLETE,
)
_TERMINAL = frozenset({DocumentStatus.COMPLETE, DocumentStatus.ERROR, DocumentStatus.SKIPPED})
_IN_PROGRESS = frozenset(
    {DocumentStatus.PARSING, DocumentStatus.CHUNKING, DocumentStatus.EMBEDDING}
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    """An uploaded document and its processing outcome."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    owner_id: str
    session_id: str = Field(description="Upload batch the document belongs to.")
    filename: str
    file_size: int = Field(ge=0)
    storage_path: str = Field(description="Location of the raw bytes in file storage.")
    content_hash: str = Field(description="SHA-256 hex digest of the raw bytes.")
    status: DocumentStatus = DocumentStatus.PENDING
    error_message: str | None = None
    page_count: int | None = None
    chunk_count: int = 0
    title: str | None = None
    author: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def display_name(self) -> str:
        return self.title or self.filename
