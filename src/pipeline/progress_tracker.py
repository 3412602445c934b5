"""Ingestion progress tracking with callback-based listener notification.

Keeps the latest :class:`~src.models.pipeline.ProcessingStatus` for each
document and broadcasts every update to listener callbacks registered for
that document.  Listeners are keyed by document ID so concurrent sessions
never see each other's events.

The orchestrator both yields each status to its caller and records it here,
so a poller that did not start the processing (a status endpoint, the CLI
``status`` command) can still read where a document is.  Only documents in
flight are kept: a terminal status (complete or error) is broadcast and
then dropped, and finished documents are read back from the document store.

Listener errors are logged and skipped: a broken listener must not stall
ingestion.  Both sync and async callbacks are supported.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from src.models.pipeline import ProcessingStatus
from src.utils.logging import get_logger


class ProgressTracker:
    """Tracks and broadcasts per-document processing status."""

    def __init__(self) -> None:
        self._statuses: dict[str, ProcessingStatus] = {}
        self._listeners: dict[str, list[Callable]] = {}
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def update(self, status: ProcessingStatus) -> None:
        """Record *status* as the document's latest and notify its listeners.

        A terminal status is delivered to listeners but not retained.
        """
        if status.is_terminal:
            self._statuses.pop(status.document_id, None)
        else:
            self._statuses[status.document_id] = status

        self._logger.debug(
            "progress_update",
            document_id=status.document_id,
            stage=status.stage.value,
            percent=round(status.percent, 1),
            message=status.message,
        )

        await self._notify_listeners(status)

    def register_listener(self, document_id: str, callback: Callable) -> None:
        """Register a callback receiving every :class:`ProcessingStatus` for a document.

        Parameters
        ----------
        document_id:
            The document to listen to.
        callback:
            An async or sync callable accepting one ``ProcessingStatus``.
        """
        listeners = self._listeners.setdefault(document_id, [])
        if callback not in listeners:
            listeners.append(callback)
            self._logger.debug(
                "listener_registered",
                document_id=document_id,
                total_listeners=len(listeners),
            )

    def unregister_listener(self, document_id: str, callback: Callable) -> None:
        listeners = self._listeners.get(document_id, [])
        if callback in listeners:
            listeners.remove(callback)
            if not listeners:
                del self._listeners[document_id]

    def get_status(self, document_id: str) -> ProcessingStatus | None:
        """Return the latest in-flight status for *document_id*, or ``None``."""
        return self._statuses.get(document_id)

    def forget(self, document_id: str) -> None:
        """Drop the document's status and listeners (after deletion)."""
        self._statuses.pop(document_id, None)
        self._listeners.pop(document_id, None)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _notify_listeners(self, status: ProcessingStatus) -> None:
        for callback in list(self._listeners.get(status.document_id, [])):
            try:
                result = callback(status)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._logger.warning(
                    "listener_callback_error",
                    document_id=status.document_id,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )
