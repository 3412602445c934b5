"""Vector store provider implementations.

ChromaDB is the sole vector store implementation.  It stores chunk
embeddings on disk in an HNSW index (cosine space) and filters queries by
owner and document metadata.  Data persists at CHROMADB_PERSIST_DIR.
"""

from src.providers.vector_store.chromadb_provider import ChromaDBProvider

__all__ = ["ChromaDBProvider"]
