"""Utility modules for docchat.

- **errors** -- Domain exception hierarchy rooted at DocChatError; each
  layer raises its own subclass so callers handle failures granularly.
- **logging** -- structlog setup with a dual-renderer pattern: coloured
  console output in development, structured JSON in production.
- **concurrency** -- semaphore-bounded ``gather`` used to run independent
  upload sessions side by side.
- **text** -- token estimation, extracted-text cleanup and content hashing.
"""

from src.utils.concurrency import throttled_gather
from src.utils.errors import (
    CircuitOpenError,
    ConfigurationError,
    DocChatError,
    DocumentError,
    InvalidRequestError,
    PipelineError,
    ProviderUnavailableError,
    RateLimitError,
    RateLimitExceededError,
    SearchUnavailableError,
    VectorStoreError,
)
from src.utils.logging import bind_log_context, configure_logging, get_logger, log_context
from src.utils.text import content_hash, estimate_tokens, normalize_extracted_text

__all__ = [
    "CircuitOpenError",
    "ConfigurationError",
    "DocChatError",
    "DocumentError",
    "InvalidRequestError",
    "PipelineError",
    "ProviderUnavailableError",
    "RateLimitError",
    "RateLimitExceededError",
    "SearchUnavailableError",
    "VectorStoreError",
    "bind_log_context",
    "configure_logging",
    "content_hash",
    "estimate_tokens",
    "get_logger",
    "log_context",
    "normalize_extracted_text",
    "throttled_gather",
]
