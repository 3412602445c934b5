"""Document record store implementations.

SQLiteDocumentStore keeps one row per uploaded document (ownership, upload
session, content hash, lifecycle status) in a local SQLite file.
"""

from src.providers.document_store.sqlite_document_store import SQLiteDocumentStore

__all__ = ["SQLiteDocumentStore"]
