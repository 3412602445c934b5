"""docchat domain models — re-exports all public model classes.

Submodules by concern:
    - document.py   — Uploaded document rows and their lifecycle status
    - pipeline.py   — Ingestion progress events and session summaries
    - rag.py        — Extracted text, chunks, embeddings, search results
    - resilience.py — Circuit-breaker and rate-limit snapshots
"""

from __future__ import annotations

from src.models.document import Document, DocumentStatus
from src.models.pipeline import (
    STAGE_PROGRESS,
    ProcessingStage,
    ProcessingStatus,
    ReconcileReport,
    SessionResult,
)
from src.models.rag import (
    DocumentChunk,
    EmbeddingBatchResult,
    ExtractedText,
    RetrievalErrorInfo,
    RetrievalResponse,
    ScoredChunk,
    SearchResult,
    TextChunk,
)
from src.models.resilience import (
    CircuitEvent,
    CircuitMetrics,
    CircuitState,
    RateLimitDecision,
)

__all__ = [
    "STAGE_PROGRESS",
    "CircuitEvent",
    "CircuitMetrics",
    "CircuitState",
    "Document",
    "DocumentChunk",
    "DocumentStatus",
    "EmbeddingBatchResult",
    "ExtractedText",
    "ProcessingStage",
    "ProcessingStatus",
    "RateLimitDecision",
    "ReconcileReport",
    "RetrievalErrorInfo",
    "RetrievalResponse",
    "ScoredChunk",
    "SearchResult",
    "SessionResult",
    "TextChunk",
]
