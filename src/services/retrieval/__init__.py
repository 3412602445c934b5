"""Query-time retrieval: normalization, cache keys and ranked search."""

from src.services.retrieval.query_preprocessor import (
    build_embedding_cache_key,
    build_search_cache_key,
    normalize_query,
)
from src.services.retrieval.retrieval_engine import RetrievalEngine, classify_error

__all__ = [
    "RetrievalEngine",
    "build_embedding_cache_key",
    "build_search_cache_key",
    "classify_error",
    "normalize_query",
]
