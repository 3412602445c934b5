"""Local-disk implementation of :class:`IFileStorage`.

Files are laid out as ``{base_path}/{owner_id}/{document_id}{suffix}``,
keeping the original extension so the stored file stays recognisable.
Disk I/O runs in a worker thread so the event loop never blocks.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

import structlog

from src.interfaces.file_storage import IFileStorage
from src.utils.errors import InvalidRequestError

logger = structlog.get_logger(logger_name=__name__)

_SAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9_.-]")


def _safe_segment(value: str) -> str:
    cleaned = _SAFE_SEGMENT_RE.sub("_", value).strip("._")
    if not cleaned:
        raise InvalidRequestError(message=f"Invalid path segment: {value!r}", field="owner_id")
    return cleaned


class LocalFileStorage(IFileStorage):
    """Stores uploads under a base directory on the local disk.

    Parameters
    ----------
    base_path:
        Root directory for uploads (created if missing).
    """

    def __init__(self, base_path: str | Path) -> None:
        self._base_path = Path(base_path)
        self._base_path.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base_path

    async def save(self, owner_id: str, document_id: str, filename: str, data: bytes) -> str:
        suffix = Path(filename).suffix.lower()
        target = self._base_path / _safe_segment(owner_id) / f"{_safe_segment(document_id)}{suffix}"

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("upload_saved", path=str(target), size=len(data))
        return str(target)

    async def read(self, storage_path: str) -> bytes:
        path = self._resolve(storage_path)
        return await asyncio.to_thread(path.read_bytes)

    async def delete(self, storage_path: str) -> bool:
        path = self._resolve(storage_path)

        def _unlink() -> bool:
            if not path.exists():
                return False
            path.unlink()
            return True

        deleted = await asyncio.to_thread(_unlink)
        if deleted:
            logger.info("upload_deleted", path=str(path))
        else:
            logger.warning("upload_delete_missing", path=str(path))
        return deleted

    def _resolve(self, storage_path: str) -> Path:
        """Return *storage_path* as a Path, refusing anything outside the base directory."""
        path = Path(storage_path).resolve()
        if not path.is_relative_to(self._base_path.resolve()):
            raise InvalidRequestError(
                message=f"Storage path is outside the upload directory: {storage_path}",
                field="storage_path",
            )
        return path
