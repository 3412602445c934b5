"""Unit tests for LocalFileStorage."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.providers.storage.local_file_storage import LocalFileStorage
from src.utils.errors import InvalidRequestError


class TestLocalFileStorage:
    @pytest.mark.asyncio
    async def test_save_layout_and_read(self, file_storage: LocalFileStorage) -> None:
        path = await file_storage.save("alice", "doc-1", "Report.PDF", b"%PDF-data")
        assert Path(path) == file_storage.base_path / "alice" / "doc-1.pdf"
        assert await file_storage.read(path) == b"%PDF-data"

    @pytest.mark.asyncio
    async def test_unsafe_segments_are_sanitized(self, file_storage: LocalFileStorage) -> None:
        path = await file_storage.save("../../etc", "doc/1", "notes.txt", b"x")
        assert Path(path).resolve().is_relative_to(file_storage.base_path.resolve())

    @pytest.mark.asyncio
    async def test_empty_segment_is_rejected(self, file_storage: LocalFileStorage) -> None:
        with pytest.raises(InvalidRequestError):
            await file_storage.save("..", "doc-1", "notes.txt", b"x")

    @pytest.mark.asyncio
    async def test_delete(self, file_storage: LocalFileStorage) -> None:
        path = await file_storage.save("alice", "doc-1", "notes.txt", b"x")
        assert await file_storage.delete(path) is True
        assert await file_storage.delete(path) is False

    @pytest.mark.asyncio
    async def test_paths_outside_base_are_refused(
        self, file_storage: LocalFileStorage, tmp_path: Path
    ) -> None:
        outside = tmp_path / "secret.txt"
        outside.write_text("do not read")
        with pytest.raises(InvalidRequestError) as exc_info:
            await file_storage.read(str(outside))
        assert exc_info.value.field == "storage_path"
        with pytest.raises(InvalidRequestError):
            await file_storage.delete(str(outside))
        assert outside.exists()
