"""Embedding client: batching, retry and validation around the provider."""

from src.services.embedding.embedding_client import EmbeddingClient

__all__ = ["EmbeddingClient"]
