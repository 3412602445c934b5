"""Embedding provider implementations.

Embeddings convert text into numeric vectors that capture semantic meaning.
The vectors are stored in ChromaDB and compared with cosine distance.

OpenAIEmbeddingProvider — text-embedding-3-small (1536 dims) against the
OpenAI API or any OpenAI-compatible endpoint.
"""

from src.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider

__all__ = ["OpenAIEmbeddingProvider"]
