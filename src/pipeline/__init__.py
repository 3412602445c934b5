"""Ingestion pipeline orchestration for docchat."""

from src.pipeline.ingestion_orchestrator import IngestionOrchestrator
from src.pipeline.progress_tracker import ProgressTracker

__all__ = [
    "IngestionOrchestrator",
    "ProgressTracker",
]
