"""Batched, retried and validated access to the embedding provider.

The client sits between the pipeline and :class:`IEmbeddingProvider`:

1. **Batching** -- inputs are sent in slices of ``batch_size`` (default
   100), one provider call per slice.
2. **Circuit breaking** -- every provider call goes through the
   ``openai`` breaker, so a failing provider is cut off quickly instead of
   piling up timeouts.
3. **Retry** -- transient failures (rate limiting, timeouts, dropped
   connections) are retried for the same batch with exponential backoff
   (1s, 2s, 4s by default) via tenacity.  When the retry budget is spent,
   the batch fails with :class:`ProviderUnavailableError`.  Permanent errors
   and an open circuit propagate immediately.
4. **Validation** -- each returned vector must have the provider's
   dimensionality and finite components.  Unusual magnitudes are logged.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.config.settings import EmbeddingConfig
from src.interfaces.embedding_provider import IEmbeddingProvider
from src.models.rag import EmbeddingBatchResult
from src.services.resilience.circuit_breaker import CircuitBreaker
from src.utils.errors import EmbeddingError, ProviderUnavailableError, TransientProviderError
from src.utils.text import estimate_tokens

logger = structlog.get_logger(logger_name=__name__)

# Vectors from normalised models sit near magnitude 1.0.
_MAGNITUDE_BAND = (0.1, 2.0)

BatchCallback = Callable[[int, int], Any]


class EmbeddingClient:
    """Embeds lists of texts through a provider with batching and retry.

    Parameters
    ----------
    provider:
        The embedding backend.
    breaker:
        Circuit breaker guarding the provider; optional for tests.
    config:
        Batch size and retry policy.
    sleep:
        Awaitable sleep used between retries (tests inject a recorder).
    """

    def __init__(
        self,
        provider: IEmbeddingProvider,
        breaker: CircuitBreaker | None = None,
        config: EmbeddingConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._breaker = breaker
        self._config = config or EmbeddingConfig()
        self._sleep = sleep

    @property
    def dimension(self) -> int:
        return self._provider.get_dimension()

    @property
    def model(self) -> str:
        return self._provider.get_model_name()

    @property
    def batch_size(self) -> int:
        return self._config.batch_size

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed_texts(
        self,
        texts: list[str],
        on_batch: BatchCallback | None = None,
    ) -> EmbeddingBatchResult:
        """Embed *texts*, returning one vector per input in input order.

        Parameters
        ----------
        texts:
            Texts to embed.  An empty list returns an empty result without
            calling the provider.
        on_batch:
            Optional sync or async ``callback(done_batches, total_batches)``
            invoked after each batch succeeds.
        """
        if not texts:
            return EmbeddingBatchResult(
                embeddings=[], model=self.model, dimensions=self.dimension, batch_count=0
            )

        size = self._config.batch_size
        batches = [texts[start : start + size] for start in range(0, len(texts), size)]
        embeddings: list[list[float]] = []

        for number, batch in enumerate(batches, start=1):
            vectors = await self._embed_batch(batch, number, len(batches))
            self._validate(vectors, expected=len(batch))
            embeddings.extend(vectors)
            if on_batch is not None:
                outcome = on_batch(number, len(batches))
                if asyncio.iscoroutine(outcome):
                    await outcome

        tokens = sum(estimate_tokens(text) for text in texts)
        logger.info(
            "embeddings_generated",
            texts=len(texts),
            batches=len(batches),
            tokens=tokens,
            model=self.model,
        )
        return EmbeddingBatchResult(
            embeddings=embeddings,
            tokens_used=tokens,
            model=self.model,
            dimensions=self.dimension,
            batch_count=len(batches),
        )

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single (already normalized) query string."""
        result = await self.embed_texts([text])
        return result.embeddings[0]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _embed_batch(self, batch: list[str], number: int, total: int) -> list[list[float]]:
        attempts = self._config.max_retries + 1
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=self._config.retry_base_delay_seconds,
                max=self._config.retry_max_delay_seconds,
            ),
            retry=retry_if_exception_type(TransientProviderError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    vectors = await self._call_provider(batch)
        except TransientProviderError as exc:
            logger.error(
                "embedding_batch_failed",
                batch=number,
                total_batches=total,
                attempts=attempts,
                error=str(exc),
            )
            raise ProviderUnavailableError(
                message=(
                    "Embedding service is temporarily unavailable "
                    f"(batch {number}/{total} failed after {attempts} attempts)"
                ),
                provider_name=self._provider.get_provider_name(),
            ) from exc
        return vectors

    async def _call_provider(self, batch: list[str]) -> list[list[float]]:
        if self._breaker is None:
            return await self._provider.embed(batch)
        return await self._breaker.call(lambda: self._provider.embed(batch))

    def _validate(self, vectors: list[list[float]], expected: int) -> None:
        provider = self._provider.get_provider_name()
        if len(vectors) != expected:
            raise EmbeddingError(
                message=f"Provider returned {len(vectors)} vectors for {expected} inputs",
                provider_name=provider,
            )
        dimension = self.dimension
        low, high = _MAGNITUDE_BAND
        for position, vector in enumerate(vectors):
            if len(vector) != dimension:
                raise EmbeddingError(
                    message=(
                        f"Embedding {position} has dimension {len(vector)}, expected {dimension}"
                    ),
                    provider_name=provider,
                )
            if not all(math.isfinite(value) for value in vector):
                raise EmbeddingError(
                    message=f"Embedding {position} contains NaN or infinite values",
                    provider_name=provider,
                )
            magnitude = math.sqrt(sum(value * value for value in vector))
            if magnitude < low or magnitude > high:
                logger.warning(
                    "embedding_unusual_magnitude",
                    position=position,
                    magnitude=round(magnitude, 4),
                )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "embedding_retry",
            attempt=retry_state.attempt_number,
            delay_seconds=delay,
            error=str(error) if error else None,
        )
