"""OpenAI-compatible embedding provider adapter.

Wraps the ``openai`` async client to implement :class:`IEmbeddingProvider`.
Supports real OpenAI and OpenAI-compatible providers via a custom
``base_url``.  The SDK's own retry loop is disabled (``max_retries=0``):
retries, backoff and circuit breaking happen in
:class:`~src.services.embedding.embedding_client.EmbeddingClient`, so
this adapter makes exactly one request per call and classifies failures.
"""

from __future__ import annotations

import openai
import structlog

from src.config.settings import Settings
from src.interfaces.embedding_provider import IEmbeddingProvider
from src.utils.errors import (
    EmbeddingError,
    ProviderTimeoutError,
    RateLimitError,
    TransientProviderError,
)

logger = structlog.get_logger(logger_name=__name__)

# Native dimensions of known embedding models.
_MODEL_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

# Models that accept the ``dimensions`` request parameter.
_SHORTENABLE_PREFIX = "text-embedding-3"

_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")


def is_rate_limit_message(message: str) -> bool:
    """Return ``True`` if an error message describes rate limiting."""
    lowered = message.lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """Embedding provider backed by an OpenAI-compatible embeddings API.

    Uses ``text-embedding-3-small`` (1536 dims) by default.  For
    ``text-embedding-3-*`` models a smaller ``embedding_dimensions`` is
    requested from the API directly.
    """

    def __init__(self, settings: Settings, request_timeout: float = 30.0) -> None:
        self._api_key = settings.openai_api_key
        self._model = settings.openai_embedding_model or "text-embedding-3-small"

        client_kwargs: dict = {
            "api_key": self._api_key or "missing",
            "timeout": request_timeout,
            "max_retries": 0,
        }
        if settings.openai_base_url:
            client_kwargs["base_url"] = settings.openai_base_url
        self._client = openai.AsyncOpenAI(**client_kwargs)

        native = _MODEL_DIMENSIONS.get(self._model)
        self._dimension = settings.embedding_dimensions or native or 1536
        self._request_dimensions = (
            self._model.startswith(_SHORTENABLE_PREFIX) and self._dimension != native
        )
        self._provider_label = (
            "openai-compatible_embedding" if settings.openai_base_url else "openai_embedding"
        )

    # ------------------------------------------------------------------
    # IEmbeddingProvider implementation
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        request: dict = {"input": texts, "model": self._model}
        if self._request_dimensions:
            request["dimensions"] = self._dimension

        try:
            response = await self._client.embeddings.create(**request)
        except openai.RateLimitError as exc:
            raise RateLimitError(
                message=f"Embedding rate limit: {exc}",
                provider_name=self._provider_label,
            ) from exc
        except openai.APITimeoutError as exc:
            raise ProviderTimeoutError(
                message="Embedding request timed out",
                provider_name=self._provider_label,
            ) from exc
        except openai.APIConnectionError as exc:
            raise TransientProviderError(
                message=f"Embedding connection error: {exc}",
                provider_name=self._provider_label,
            ) from exc
        except openai.InternalServerError as exc:
            raise TransientProviderError(
                message=f"Embedding service error: {exc}",
                provider_name=self._provider_label,
            ) from exc
        except openai.APIError as exc:
            if is_rate_limit_message(str(exc)):
                raise RateLimitError(
                    message=f"Embedding rate limit: {exc}",
                    provider_name=self._provider_label,
                ) from exc
            raise EmbeddingError(
                message=f"{self._provider_label} API error: {exc}",
                provider_name=self._provider_label,
            ) from exc

        # The API may return items out of order; ``index`` is authoritative.
        ordered = sorted(response.data, key=lambda item: item.index)
        logger.debug(
            "openai_embedding_batch",
            model=self._model,
            provider=self._provider_label,
            batch_size=len(texts),
            tokens=response.usage.total_tokens if response.usage else None,
        )
        return [list(item.embedding) for item in ordered]

    def get_dimension(self) -> int:
        return self._dimension

    def get_provider_name(self) -> str:
        return self._provider_label

    def get_model_name(self) -> str:
        return self._model

    def is_available(self) -> bool:
        """Return ``True`` if an API key is configured."""
        return bool(self._api_key)
