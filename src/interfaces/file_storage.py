"""Abstract base class for raw upload storage.

Uploaded bytes are written once at upload time and read back by the
ingestion orchestrator when the document is processed.  The path returned
by :meth:`IFileStorage.save` is opaque to callers and stored on the
document row as ``storage_path``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementation: LocalFileStorage (src/providers/storage/)
class IFileStorage(ABC):
    """Contract for storing and retrieving raw document bytes."""

    @abstractmethod
    async def save(self, owner_id: str, document_id: str, filename: str, data: bytes) -> str:
        """Persist *data* and return its storage path."""

    @abstractmethod
    async def read(self, storage_path: str) -> bytes:
        """Return the bytes stored at *storage_path*.

        Raises
        ------
        FileNotFoundError
            If nothing is stored at the path.
        """

    @abstractmethod
    async def delete(self, storage_path: str) -> bool:
        """Delete the stored bytes; return ``True`` if they existed."""
