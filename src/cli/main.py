"""Command-line interface for docchat.

Usage::

    python -m src.cli upload --owner alice report.pdf notes.md --process
    python -m src.cli process --owner alice 3f2c9a...
    python -m src.cli query --owner alice "what was the q3 revenue?" --top-k 3
    python -m src.cli status 3f2c9a...
    python -m src.cli list --owner alice
    python -m src.cli delete --owner alice 3f2c9a...
    python -m src.cli reconcile --stale-after 1800
    python -m src.cli breakers

Every command builds its own :class:`~src.main.AppContext` from
``config/config.yaml`` and the environment, runs once and closes it.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from src.config.loader import load_settings
from src.main import AppContext, build_app_context
from src.models.document import DocumentStatus
from src.models.pipeline import ProcessingStage, ProcessingStatus
from src.services.retrieval.retrieval_engine import classify_error
from src.utils.errors import DocChatError, RateLimitExceededError, SearchUnavailableError
from src.utils.logging import bind_log_context, configure_logging


def _print_status(status: ProcessingStatus) -> None:
    line = f"  [{status.stage.value:<9}] {status.percent:5.1f}%  {status.message}"
    if status.error and status.error != status.message:
        line += f" ({status.error})"
    print(line)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


async def _handle_upload(args: argparse.Namespace, ctx: AppContext) -> int:
    session_id = args.session
    for raw_path in args.files:
        path = Path(raw_path)
        if not path.is_file():
            print(f"Error: {path} is not a file", file=sys.stderr)
            return 1
        document = await ctx.rag_service.upload(
            args.owner, path.name, path.read_bytes(), session_id=session_id
        )
        # Files of one invocation share the first file's session.
        session_id = document.session_id
        print(f"Uploaded {path.name}")
        print(f"  Document ID: {document.document_id}")
        print(f"  Session ID:  {document.session_id}")

    if args.process and session_id:
        result = await ctx.rag_service.process_session(args.owner, session_id)
        print("\nSession processed:")
        for status in result.documents:
            print(f"  {status.document_id}: {status.stage.value}  {status.message}")
        print(
            f"  complete={result.processed_count} "
            f"error={result.error_count} skipped={result.skipped_count}"
        )
        return 1 if result.error_count else 0
    return 0


async def _handle_process(args: argparse.Namespace, ctx: AppContext) -> int:
    stream = (
        ctx.rag_service.reprocess_document(args.owner, args.document_id)
        if args.retry
        else ctx.rag_service.process_document(args.owner, args.document_id)
    )
    final: ProcessingStatus | None = None
    print(f"Processing {args.document_id}")
    async for status in stream:
        _print_status(status)
        final = status
    return 0 if final is not None and final.stage is not ProcessingStage.ERROR else 1


async def _handle_query(args: argparse.Namespace, ctx: AppContext) -> int:
    try:
        response = await ctx.rag_service.retrieve(
            args.owner,
            args.query,
            top_k=args.top_k,
            threshold=args.threshold,
            document_ids=args.document or None,
        )
    except (SearchUnavailableError, RateLimitExceededError) as exc:
        info = classify_error(exc)
        print(f"Error [{info.code}]: {info.message}", file=sys.stderr)
        if info.retry_after:
            print(f"  Retry after {info.retry_after:.0f}s", file=sys.stderr)
        return 1

    source = "cache" if response.cached else "search"
    print(f"Query: {response.query}")
    print(f"{response.total_results} result(s) from {source} in {response.latency_ms:.1f} ms")
    for rank, result in enumerate(response.results, start=1):
        page = f", page {result.page_number}" if result.page_number else ""
        print(f"\n{rank}. {result.document_name}{page}  (similarity {result.similarity:.3f})")
        print(f"   {result.text[:300]}")
    return 0


async def _handle_status(args: argparse.Namespace, ctx: AppContext) -> int:
    status = await ctx.orchestrator.get_status(args.document_id)
    if status is None:
        print(f"Document {args.document_id} not found", file=sys.stderr)
        return 1
    _print_status(status)
    return 0


async def _handle_list(args: argparse.Namespace, ctx: AppContext) -> int:
    status = DocumentStatus(args.status) if args.status else None
    documents = await ctx.document_store.list_documents(args.owner, status)
    if not documents:
        print("No documents.")
        return 0
    for document in documents:
        print(
            f"{document.document_id}  {document.status.value:<9}  "
            f"{document.chunk_count:>5} chunks  {document.display_name}"
        )
    return 0


async def _handle_delete(args: argparse.Namespace, ctx: AppContext) -> int:
    if await ctx.orchestrator.delete_document(args.owner, args.document_id):
        print(f"Deleted {args.document_id}")
        return 0
    print(f"Document {args.document_id} not found", file=sys.stderr)
    return 1


async def _handle_reconcile(args: argparse.Namespace, ctx: AppContext) -> int:
    report = await ctx.orchestrator.reconcile(
        stale_after_seconds=args.stale_after or ctx.settings.stale_processing_seconds
    )
    print("Reconciliation complete:")
    print(f"  Stale documents failed:    {report.stale_marked_error}")
    print(f"  Orphan chunk sets removed: {report.orphan_chunk_sets_removed}")
    return 0


async def _handle_breakers(_args: argparse.Namespace, ctx: AppContext) -> int:
    print("Circuit breakers")
    print("=" * 40)
    for name, message in sorted(ctx.breakers.all_status().items()):
        print(f"  {name:<14} {message}")
    return 0


_HANDLERS = {
    "upload": _handle_upload,
    "process": _handle_process,
    "query": _handle_query,
    "status": _handle_status,
    "list": _handle_list,
    "delete": _handle_delete,
    "reconcile": _handle_reconcile,
    "breakers": _handle_breakers,
}


# ---------------------------------------------------------------------------
# Parser and entry point
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docchat",
        description="Upload documents, run the ingestion pipeline and query the index.",
    )
    parser.add_argument("--config", default="config/config.yaml", help="YAML config file")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    sub = parser.add_subparsers(dest="command")

    upload = sub.add_parser("upload", help="Store files as pending documents")
    upload.add_argument("files", nargs="+", help="PDF, .txt or .md files")
    upload.add_argument("--owner", required=True)
    upload.add_argument("--session", default=None, help="Existing upload session id")
    upload.add_argument("--process", action="store_true", help="Process the session right away")

    process = sub.add_parser("process", help="Run the pipeline for one document")
    process.add_argument("document_id")
    process.add_argument("--owner", required=True)
    process.add_argument("--retry", action="store_true", help="Reset a failed document first")

    query = sub.add_parser("query", help="Search an owner's documents")
    query.add_argument("query")
    query.add_argument("--owner", required=True)
    query.add_argument("--top-k", type=int, default=None)
    query.add_argument("--threshold", type=float, default=None)
    query.add_argument(
        "--document", action="append", default=[], help="Restrict to a document id (repeatable)"
    )

    status = sub.add_parser("status", help="Show a document's latest status")
    status.add_argument("document_id")

    listing = sub.add_parser("list", help="List an owner's documents")
    listing.add_argument("--owner", required=True)
    listing.add_argument("--status", choices=[s.value for s in DocumentStatus], default=None)

    delete = sub.add_parser("delete", help="Delete a document and its chunks")
    delete.add_argument("document_id")
    delete.add_argument("--owner", required=True)

    reconcile = sub.add_parser("reconcile", help="Fail stale documents and drop orphan chunks")
    reconcile.add_argument(
        "--stale-after", type=int, default=None, help="Seconds without progress (default: config)"
    )

    sub.add_parser("breakers", help="Show circuit breaker states")
    return parser


async def _run(args: argparse.Namespace, ctx: AppContext) -> int:
    bind_log_context(command=args.command, owner_id=getattr(args, "owner", None))
    try:
        return await _HANDLERS[args.command](args, ctx)
    finally:
        await ctx.close()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point: parse arguments, build the app context, dispatch."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        app_settings = load_settings(args.config)
        configure_logging(args.log_level or app_settings.log_level, json_output=args.json_logs)
        ctx = build_app_context(app_settings)
        exit_code = asyncio.run(_run(args, ctx))
    except DocChatError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
