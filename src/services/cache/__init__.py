"""Two-tier caching of query embeddings and search results."""

from src.services.cache.two_tier_cache import TwoTierCache, document_tag, owner_tag

__all__ = ["TwoTierCache", "document_tag", "owner_tag"]
