"""Public interface definitions for the external services docchat talks to.

Every external system (embedding API, vector database, document database,
cache server, upload storage) is accessed exclusively through the abstract
base classes defined in this package.  Concrete adapters implement these
interfaces and are injected by :func:`src.main.build_app_context`, so unit
tests can pass a fake in place of any of them.

CONCRETE PROVIDER MAP:
    Interface                  →  Concrete implementations (in src/providers/)
    ─────────────────────────────────────────────────────────────────────
    IEmbeddingProvider         →  OpenAIEmbeddingProvider
    IVectorStoreProvider       →  ChromaDBProvider
    IDocumentStore             →  SQLiteDocumentStore
    ICacheProvider             →  MemoryCacheProvider, RedisCacheProvider
    IFileStorage               →  LocalFileStorage
"""

from src.interfaces.cache_provider import ICacheProvider
from src.interfaces.document_store import IDocumentStore
from src.interfaces.embedding_provider import IEmbeddingProvider
from src.interfaces.file_storage import IFileStorage
from src.interfaces.vector_store_provider import IVectorStoreProvider

__all__ = [
    "ICacheProvider",
    "IDocumentStore",
    "IEmbeddingProvider",
    "IFileStorage",
    "IVectorStoreProvider",
]
