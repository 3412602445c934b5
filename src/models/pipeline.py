"""Ingestion progress models.

:class:`ProcessingStage` is the orchestrator's state machine.  It mirrors
:class:`~src.models.document.DocumentStatus` but adds a ``storing`` step
that is reported to the UI without being persisted on the document row.

Each stage owns a coarse percentage band so a progress bar moves steadily:

    parsing 0–30 → chunking 30–70 → embedding 70–100 → storing 100
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field


class ProcessingStage(str, Enum):  # noqa: UP042 — StrEnum requires Python 3.11+
    """Stages reported while a document moves through the pipeline."""

    PENDING = "pending"
    PARSING = "parsing"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"
    COMPLETE = "complete"
    ERROR = "error"
    SKIPPED = "skipped"


# (start, end) percentage band per stage.
STAGE_PROGRESS: dict[ProcessingStage, tuple[float, float]] = {
    ProcessingStage.PENDING: (0.0, 0.0),
    ProcessingStage.PARSING: (0.0, 30.0),
    ProcessingStage.CHUNKING: (30.0, 70.0),
    ProcessingStage.EMBEDDING: (70.0, 100.0),
    ProcessingStage.STORING: (100.0, 100.0),
    ProcessingStage.COMPLETE: (100.0, 100.0),
    ProcessingStage.ERROR: (100.0, 100.0),
    ProcessingStage.SKIPPED: (100.0, 100.0),
}

_TERMINAL_STAGES = frozenset(
    {ProcessingStage.COMPLETE, ProcessingStage.ERROR, ProcessingStage.SKIPPED}
)


class ProcessingStatus(BaseModel):
    """A single progress event emitted by the ingestion orchestrator."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    stage: ProcessingStage
    percent: float = Field(default=0.0, ge=0.0, le=100.0)
    message: str = ""
    error: str | None = None
    chunk_count: int | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_terminal(self) -> bool:
        return self.stage in _TERMINAL_STAGES


class SessionResult(BaseModel):
    """Summary of draining one upload session's queue."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    processed_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    documents: list[ProcessingStatus] = Field(default_factory=list)


class ReconcileReport(BaseModel):
    """Outcome of a reconciliation pass over stale and failed documents."""

    model_config = ConfigDict(frozen=True)

    stale_marked_error: int = 0
    orphan_chunk_sets_removed: int = 0
