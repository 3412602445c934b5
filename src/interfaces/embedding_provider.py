"""Abstract base class for text-embedding service providers.

Defines the contract for generating embedding vectors from text.  The
embedding client batches, retries and validates around this seam, so an
implementation only has to make one API call per ``embed`` and translate
the backend's errors into the docchat hierarchy:

- rate limiting (HTTP 429 and friends) → :class:`~src.utils.errors.RateLimitError`
- timeouts / transient network faults → :class:`~src.utils.errors.ProviderTimeoutError`
- anything else → :class:`~src.utils.errors.EmbeddingError` (not retried)
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementations:
#   OpenAIEmbeddingProvider — text-embedding-3-small (requires API key)
# Located in: src/providers/embedding/
class IEmbeddingProvider(ABC):
    """Contract for text-embedding services used by the RAG pipeline."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for one batch of texts.

        Parameters
        ----------
        texts:
            The batch to embed.  The caller keeps batches within the
            provider's per-call limit.

        Returns
        -------
        list[list[float]]
            Embedding vectors corresponding positionally to *texts*.

        Raises
        ------
        src.utils.errors.RateLimitError
            The provider asked us to slow down (retryable).
        src.utils.errors.ProviderTimeoutError
            The call timed out or the connection dropped (retryable).
        src.utils.errors.EmbeddingError
            Any other failure (not retryable).
        """

    async def embed_single(self, text: str) -> list[float]:
        """Embed one text (e.g. a search query)."""
        vectors = await self.embed([text])
        return vectors[0]

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the dimensionality of the embedding vectors.

        Constant for the lifetime of the provider and equal to the
        dimension of the vectors already stored in the vector store.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier, e.g. ``"openai_embedding"``."""

    @abstractmethod
    def get_model_name(self) -> str:
        """Return the embedding model name, e.g. ``"text-embedding-3-small"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the provider is configured (credentials present)."""
