"""Custom exception hierarchy for docchat.

All application exceptions inherit from :class:`DocChatError`, which
carries an optional ``provider_name`` so error handlers can identify which
external service (e.g. "openai", "chromadb", "redis") caused the failure.

The hierarchy follows the error taxonomy of the pipeline:

    DocChatError  (base -- catch-all for any docchat error)
    +-- InvalidRequestError          (bad parameters; never retried)
    +-- DocumentError                (permanent, per-document failures)
    |   +-- UnsupportedFormatError
    |   +-- EncryptedDocumentError
    |   +-- CorruptedDocumentError
    +-- ChunkValidationError         (chunker produced degenerate output)
    +-- EmbeddingError               (bad vectors / permanent provider error)
    +-- TransientProviderError       (retried with backoff)
    |   +-- RateLimitError
    |   +-- ProviderTimeoutError
    +-- ProviderUnavailableError     (retries exhausted / service down)
    |   +-- CircuitOpenError         (fail-fast, breaker is open)
    +-- SearchUnavailableError       (user-facing retrieval failure)
    +-- RateLimitExceededError       (per-user quota exhausted)
    +-- VectorStoreError             (storage backend failure)
    +-- StatusConflictError          (compare-and-set on status lost)
    +-- PipelineError                (orchestration failures)
    +-- ConfigurationError           (startup / invalid config)

Callers handle errors at exactly the level they care about: the embedding
client retries ``TransientProviderError``, the retrieval engine turns
``ProviderUnavailableError`` into a degraded response, and the orchestrator
records ``DocumentError`` messages on the failed document.
"""

from __future__ import annotations


class DocChatError(Exception):
    """Base exception for all docchat errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name`` identifying which external service triggered the
    error.  The ``__str__`` method prefixes the provider name in brackets
    for structured log output, e.g. ``[openai] Rate limit exceeded``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class InvalidRequestError(DocChatError):
    """Raised for invalid caller input (empty query, top_k out of range, ...)."""

    def __init__(
        self,
        message: str = "Invalid request",
        provider_name: str | None = None,
        field: str | None = None,
    ) -> None:
        self._field = field
        super().__init__(message=message, provider_name=provider_name)

    @property
    def field(self) -> str | None:
        return self._field


# ---------------------------------------------------------------------------
# Document errors (permanent, never retried automatically)
# ---------------------------------------------------------------------------

class DocumentError(DocChatError):
    """Base for failures caused by the document itself.

    The ``message`` is user-safe: the orchestrator stores it verbatim as the
    document's ``error_message``.
    """

    def __init__(
        self,
        message: str = "Document could not be processed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class UnsupportedFormatError(DocumentError):
    """Raised when the bytes are not a recognizable document format."""

    def __init__(
        self,
        message: str = "Unsupported document format",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class EncryptedDocumentError(DocumentError):
    """Raised for password-protected documents."""

    def __init__(
        self,
        message: str = "Cannot process password-protected PDF",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class CorruptedDocumentError(DocumentError):
    """Raised when a document cannot be parsed."""

    def __init__(
        self,
        message: str = "File appears to be corrupted",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ChunkValidationError(DocChatError):
    """Raised when chunking output looks degenerate (empty or duplicate chunks)."""

    def __init__(
        self,
        message: str = "Chunk validation failed",
        provider_name: str | None = None,
        issues: list[str] | None = None,
    ) -> None:
        self._issues = list(issues or [])
        super().__init__(message=message, provider_name=provider_name)

    @property
    def issues(self) -> list[str]:
        return list(self._issues)


# ---------------------------------------------------------------------------
# External service / provider errors
# ---------------------------------------------------------------------------

class EmbeddingError(DocChatError):
    """Raised for permanent embedding failures or invalid returned vectors."""

    def __init__(
        self,
        message: str = "Embedding generation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class TransientProviderError(DocChatError):
    """Base for failures that are worth retrying with backoff."""

    def __init__(
        self,
        message: str = "Transient provider failure",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class RateLimitError(TransientProviderError):
    """Raised when an upstream API answers with a rate-limit (429-class) error."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ProviderTimeoutError(TransientProviderError):
    """Raised when an external call exceeds its timeout."""

    def __init__(
        self,
        message: str = "External call timed out",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ProviderUnavailableError(DocChatError):
    """Raised when an external service is unreachable or retries are exhausted."""

    def __init__(
        self,
        message: str = "External service is temporarily unavailable",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class CircuitOpenError(ProviderUnavailableError):
    """Raised when a call is rejected because the circuit breaker is open.

    Distinguished from a genuine failure: the protected call was never
    executed.  ``retry_after`` is the number of seconds until the breaker
    will admit a trial request.
    """

    def __init__(
        self,
        service: str,
        retry_after: float = 0.0,
        message: str | None = None,
    ) -> None:
        self._service = service
        self._retry_after = max(0.0, retry_after)
        super().__init__(
            message=message or f"Circuit breaker is open for {service}",
            provider_name=service,
        )

    @property
    def service(self) -> str:
        return self._service

    @property
    def retry_after(self) -> float:
        return self._retry_after


class SearchUnavailableError(DocChatError):
    """User-facing retrieval failure (degraded service, not a crash)."""

    def __init__(
        self,
        message: str = "Search is temporarily unavailable",
        provider_name: str | None = None,
        degraded: bool = False,
        retry_after: float | None = None,
    ) -> None:
        self._degraded = degraded
        self._retry_after = retry_after
        super().__init__(message=message, provider_name=provider_name)

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class RateLimitExceededError(DocChatError):
    """Raised when a user exhausts their request quota for the current window."""

    def __init__(
        self,
        retry_after: int,
        limit: int,
        message: str | None = None,
    ) -> None:
        self._retry_after = retry_after
        self._limit = limit
        super().__init__(
            message=message or f"Rate limit exceeded. Try again in {retry_after} seconds",
        )

    @property
    def retry_after(self) -> int:
        return self._retry_after

    @property
    def limit(self) -> int:
        return self._limit


class VectorStoreError(DocChatError):
    """Raised when the vector or document store backend fails."""

    def __init__(
        self,
        message: str = "Vector store operation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Orchestration / configuration errors
# ---------------------------------------------------------------------------

class StatusConflictError(DocChatError):
    """Raised when a compare-and-set status transition finds an unexpected state."""

    def __init__(
        self,
        document_id: str,
        expected: str,
        actual: str | None,
    ) -> None:
        self._document_id = document_id
        self._expected = expected
        self._actual = actual
        super().__init__(
            message=(
                f"Document {document_id} status is {actual!r}, expected {expected!r}"
            ),
        )

    @property
    def document_id(self) -> str:
        return self._document_id

    @property
    def expected(self) -> str:
        return self._expected

    @property
    def actual(self) -> str | None:
        return self._actual


class PipelineError(DocChatError):
    """Raised on orchestration failures (invalid transitions, missing documents)."""

    def __init__(
        self,
        message: str = "Pipeline execution failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ConfigurationError(DocChatError):
    """Raised at startup when configuration is missing or invalid."""

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
