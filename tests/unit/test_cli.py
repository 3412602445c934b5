"""Unit tests for the docchat command-line interface (src.cli.main)."""

from __future__ import annotations

from argparse import Namespace
from pathlib import Path
from unittest.mock import patch

import pytest

from src.cli.main import (
    _build_parser,
    _handle_breakers,
    _handle_delete,
    _handle_list,
    _handle_process,
    _handle_query,
    _handle_upload,
    main,
)
from src.config.settings import Settings
from src.main import AppContext, build_app_context
from src.models.document import DocumentStatus
from src.utils.errors import ConfigurationError, InvalidRequestError, RateLimitExceededError
from tests.conftest import SAMPLE_TEXT, FakeEmbeddingProvider, InMemoryVectorStore


@pytest.fixture()
def ctx(test_settings: Settings) -> AppContext:
    return build_app_context(
        test_settings,
        overrides={
            "embedding_provider": FakeEmbeddingProvider(),
            "vector_store": InMemoryVectorStore(),
        },
    )


def _upload_args(*files: Path, process: bool = True) -> Namespace:
    return Namespace(
        files=[str(f) for f in files], owner="alice", session=None, process=process
    )


# ======================================================================
# Argument parsing
# ======================================================================


class TestParser:
    def test_query_arguments(self) -> None:
        args = _build_parser().parse_args(
            ["query", "what grew?", "--owner", "alice", "--top-k", "3", "--document", "d1"]
        )
        assert args.command == "query"
        assert args.top_k == 3
        assert args.document == ["d1"]
        assert args.threshold is None

    def test_owner_is_required(self) -> None:
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["list"])

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_configuration_errors_exit_cleanly(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with patch(
            "src.cli.main.build_app_context",
            side_effect=ConfigurationError(message="OPENAI_API_KEY is required for embeddings"),
        ), pytest.raises(SystemExit) as exc_info:
            main(["breakers"])
        assert exc_info.value.code == 1
        assert "OPENAI_API_KEY" in capsys.readouterr().err


# ======================================================================
# Command handlers
# ======================================================================


class TestHandlers:
    @pytest.mark.asyncio
    async def test_upload_process_and_query(
        self, ctx: AppContext, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        report = tmp_path / "report.txt"
        report.write_text(SAMPLE_TEXT, encoding="utf-8")

        assert await _handle_upload(_upload_args(report), ctx) == 0
        out = capsys.readouterr().out
        assert "Uploaded report.txt" in out
        assert "complete=1 error=0 skipped=0" in out

        query = Namespace(
            owner="alice", query="board approved budget", top_k=2, threshold=None, document=[]
        )
        assert await _handle_query(query, ctx) == 0
        out = capsys.readouterr().out
        assert "result(s) from search" in out
        assert "report.txt" in out

    @pytest.mark.asyncio
    async def test_upload_missing_file(self, ctx: AppContext, tmp_path: Path) -> None:
        assert await _handle_upload(_upload_args(tmp_path / "nope.txt"), ctx) == 1

    @pytest.mark.asyncio
    async def test_failed_session_sets_exit_code(
        self, ctx: AppContext, tmp_path: Path
    ) -> None:
        broken = tmp_path / "broken.pdf"
        broken.write_bytes(b"not a pdf at all")
        assert await _handle_upload(_upload_args(broken), ctx) == 1

    @pytest.mark.asyncio
    async def test_query_validation_error_propagates(self, ctx: AppContext) -> None:
        query = Namespace(owner="alice", query="   ", top_k=None, threshold=None, document=[])
        with pytest.raises(InvalidRequestError):
            await _handle_query(query, ctx)

    @pytest.mark.asyncio
    async def test_list_and_delete(
        self, ctx: AppContext, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        notes = tmp_path / "notes.md"
        notes.write_text("# Notes\n\nShort meeting notes.", encoding="utf-8")
        await _handle_upload(_upload_args(notes, process=False), ctx)
        document_id = (await ctx.document_store.list_documents("alice"))[0].document_id
        capsys.readouterr()

        assert await _handle_list(Namespace(owner="alice", status="pending"), ctx) == 0
        assert "notes.md" in capsys.readouterr().out

        delete = Namespace(owner="alice", document_id=document_id)
        assert await _handle_delete(delete, ctx) == 0
        assert await _handle_delete(delete, ctx) == 1

    @pytest.mark.asyncio
    async def test_breakers(self, ctx: AppContext, capsys: pytest.CaptureFixture[str]) -> None:
        assert await _handle_breakers(Namespace(), ctx) == 0
        out = capsys.readouterr().out
        for name in ("openai", "redis", "vector_store"):
            assert name in out

    @pytest.mark.asyncio
    async def test_processing_commands_count_against_ingest_quota(
        self, test_settings: Settings, tmp_path: Path
    ) -> None:
        ctx = build_app_context(
            test_settings.model_copy(update={"rate_limit_quota": 1}),
            overrides={
                "embedding_provider": FakeEmbeddingProvider(),
                "vector_store": InMemoryVectorStore(),
            },
        )
        report = tmp_path / "report.txt"
        report.write_text(SAMPLE_TEXT, encoding="utf-8")
        await ctx.rate_limiter.enforce("alice", "ingest")

        with pytest.raises(RateLimitExceededError):
            await _handle_upload(_upload_args(report), ctx)
        document = (await ctx.document_store.list_documents("alice"))[0]
        assert document.status is DocumentStatus.PENDING

        retry = Namespace(owner="alice", document_id=document.document_id, retry=True)
        with pytest.raises(RateLimitExceededError):
            await _handle_process(retry, ctx)
        await ctx.close()
