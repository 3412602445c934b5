"""SQLite-backed document record store.

Persists :class:`~src.models.document.Document` rows with the standard
library ``sqlite3`` module.  Each operation opens a short-lived connection
in WAL mode and runs in a worker thread (``asyncio.to_thread``) inside the
``vector_store`` circuit breaker, so the event loop never blocks on disk.

Status changes are compare-and-set: ``UPDATE ... WHERE status = ?``.  When
no row is updated, the current status is read back and reported as a
:class:`StatusConflictError`.

Upload sessions are the queue: a session's ``pending`` rows, ordered by
creation time, are the documents still to process.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import structlog

from src.interfaces.document_store import IDocumentStore
from src.models.document import Document, DocumentStatus
from src.services.resilience.circuit_breaker import CircuitBreaker
from src.utils.errors import DocChatError, PipelineError, StatusConflictError, VectorStoreError

logger = structlog.get_logger(logger_name=__name__)

_T = TypeVar("_T")

_PROVIDER = "sqlite"

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS documents (
    document_id   TEXT PRIMARY KEY,
    owner_id      TEXT    NOT NULL,
    session_id    TEXT    NOT NULL,
    filename      TEXT    NOT NULL,
    file_size     INTEGER NOT NULL,
    storage_path  TEXT    NOT NULL,
    content_hash  TEXT    NOT NULL,
    status        TEXT    NOT NULL,
    error_message TEXT,
    page_count    INTEGER,
    chunk_count   INTEGER NOT NULL DEFAULT 0,
    title         TEXT,
    author        TEXT,
    created_at    TEXT    NOT NULL,
    updated_at    TEXT    NOT NULL,
    completed_at  TEXT
);
"""

_CREATE_INDEXES_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_documents_owner_hash ON documents(owner_id, content_hash);",
    "CREATE INDEX IF NOT EXISTS idx_documents_session ON documents(session_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status, updated_at);",
)

_COLUMNS = (
    "document_id",
    "owner_id",
    "session_id",
    "filename",
    "file_size",
    "storage_path",
    "content_hash",
    "status",
    "error_message",
    "page_count",
    "chunk_count",
    "title",
    "author",
    "created_at",
    "updated_at",
    "completed_at",
)

_INSERT_SQL = (
    f"INSERT INTO documents ({', '.join(_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _COLUMNS)});"
)

_SELECT_SQL = f"SELECT {', '.join(_COLUMNS)} FROM documents"

# Fields a status transition may write alongside the status.
_TRANSITION_FIELDS = frozenset({"error_message", "page_count", "chunk_count", "title", "author"})

_DEAD_STATUSES = (DocumentStatus.ERROR.value, DocumentStatus.SKIPPED.value)
_IN_PROGRESS = (
    DocumentStatus.PARSING.value,
    DocumentStatus.CHUNKING.value,
    DocumentStatus.EMBEDDING.value,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SQLiteDocumentStore(IDocumentStore):
    """Document rows in a SQLite database file.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file (parent directories are created).
    breaker:
        Circuit breaker wrapping every call.
    clock:
        Returns the current UTC time; injected by tests for stale checks.
    """

    def __init__(
        self,
        db_path: str | Path,
        breaker: CircuitBreaker | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db_path = Path(db_path)
        self._breaker = breaker
        self._clock = clock
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Create the table and indexes.  Safe to call repeatedly."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute(_CREATE_TABLE_SQL)
            for statement in _CREATE_INDEXES_SQL:
                conn.execute(statement)
            conn.commit()
        finally:
            conn.close()
        self._initialized = True
        logger.info("document_store_initialized", db_path=str(self._db_path))

    # ------------------------------------------------------------------
    # IDocumentStore implementation
    # ------------------------------------------------------------------

    async def create_document(self, document: Document) -> Document:
        row = self._document_to_row(document)

        def _insert() -> None:
            conn = self._connect()
            try:
                conn.execute(_INSERT_SQL, row)
                conn.commit()
            finally:
                conn.close()

        await self._run("create_document", _insert)
        logger.info(
            "document_created",
            document_id=document.document_id,
            owner_id=document.owner_id,
            filename=document.filename,
        )
        return document

    async def get_document(self, document_id: str) -> Document | None:
        rows = await self._select("WHERE document_id = ?", (document_id,))
        return rows[0] if rows else None

    async def list_documents(
        self, owner_id: str, status: DocumentStatus | None = None
    ) -> list[Document]:
        if status is None:
            return await self._select("WHERE owner_id = ? ORDER BY created_at, rowid", (owner_id,))
        return await self._select(
            "WHERE owner_id = ? AND status = ? ORDER BY created_at, rowid",
            (owner_id, status.value),
        )

    async def find_by_hash(
        self, owner_id: str, content_hash: str, exclude_id: str | None = None
    ) -> Document | None:
        rows = await self._select(
            "WHERE owner_id = ? AND content_hash = ? AND document_id != ? "
            "AND status NOT IN (?, ?) ORDER BY created_at, rowid LIMIT 1",
            (owner_id, content_hash, exclude_id or "", *_DEAD_STATUSES),
        )
        return rows[0] if rows else None

    async def transition_status(
        self,
        document_id: str,
        expected: DocumentStatus,
        new: DocumentStatus,
        **fields: object,
    ) -> Document:
        if not expected.can_transition_to(new):
            raise PipelineError(
                message=f"Illegal status transition {expected.value} -> {new.value}",
            )
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise PipelineError(message=f"Cannot update fields on transition: {sorted(unknown)}")

        now = self._clock()
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [new.value, _ts(now)]
        if new.is_terminal:
            assignments.append("completed_at = ?")
            params.append(_ts(now))
        elif new is DocumentStatus.PENDING:
            assignments.extend(["completed_at = NULL", "error_message = NULL"])
        for name, value in sorted(fields.items()):
            assignments.append(f"{name} = ?")
            params.append(value)
        params.extend([document_id, expected.value])
        sql = f"UPDATE documents SET {', '.join(assignments)} WHERE document_id = ? AND status = ?;"

        def _update() -> int:
            conn = self._connect()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()

        updated = await self._run("transition_status", _update)
        current = await self.get_document(document_id)
        if current is None:
            raise PipelineError(message=f"Document {document_id} does not exist")
        if updated == 0:
            raise StatusConflictError(
                document_id=document_id,
                expected=expected.value,
                actual=current.status.value,
            )
        logger.debug(
            "document_status_changed",
            document_id=document_id,
            previous=expected.value,
            status=new.value,
        )
        return current

    async def get_pending_documents(self, session_id: str) -> list[Document]:
        return await self._select(
            "WHERE session_id = ? AND status = ? ORDER BY created_at, rowid",
            (session_id, DocumentStatus.PENDING.value),
        )

    async def list_stale_documents(self, older_than_seconds: int) -> list[Document]:
        cutoff = _ts(self._clock() - timedelta(seconds=older_than_seconds))
        return await self._select(
            "WHERE status IN (?, ?, ?) AND updated_at < ? ORDER BY updated_at",
            (*_IN_PROGRESS, cutoff),
        )

    async def list_documents_by_status(self, status: DocumentStatus) -> list[Document]:
        return await self._select("WHERE status = ? ORDER BY created_at, rowid", (status.value,))

    async def delete_document(self, document_id: str) -> bool:
        def _delete() -> int:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM documents WHERE document_id = ?;", (document_id,))
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()

        deleted = await self._run("delete_document", _delete)
        return deleted > 0

    def get_provider_name(self) -> str:
        return _PROVIDER

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        """Open a new SQLite connection with WAL mode for concurrency."""
        conn = sqlite3.connect(str(self._db_path), timeout=10.0)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    async def _select(self, clause: str, params: tuple[Any, ...]) -> list[Document]:
        sql = f"{_SELECT_SQL} {clause};"

        def _query() -> list[tuple[Any, ...]]:
            conn = self._connect()
            try:
                return conn.execute(sql, params).fetchall()
            finally:
                conn.close()

        rows = await self._run("select", _query)
        return [self._row_to_document(row) for row in rows]

    async def _run(self, operation: str, fn: Callable[[], _T]) -> _T:
        if not self._initialized:
            await asyncio.to_thread(self.initialize)

        async def _invoke() -> _T:
            try:
                return await asyncio.to_thread(fn)
            except DocChatError:
                raise
            except sqlite3.Error as exc:
                raise VectorStoreError(
                    message=f"SQLite {operation} failed: {exc}",
                    provider_name=_PROVIDER,
                ) from exc

        if self._breaker is None:
            return await _invoke()
        return await self._breaker.call(_invoke)

    @staticmethod
    def _document_to_row(document: Document) -> tuple[Any, ...]:
        return (
            document.document_id,
            document.owner_id,
            document.session_id,
            document.filename,
            document.file_size,
            document.storage_path,
            document.content_hash,
            document.status.value,
            document.error_message,
            document.page_count,
            document.chunk_count,
            document.title,
            document.author,
            _ts(document.created_at),
            _ts(document.updated_at),
            _ts(document.completed_at),
        )

    @staticmethod
    def _row_to_document(row: tuple[Any, ...]) -> Document:
        data = dict(zip(_COLUMNS, row, strict=True))
        return Document.model_validate(data)
