"""Query normalization and deterministic cache keys.

Semantically identical queries ("What is RAG?", "  what is   rag? ") must
hit the same cache entry and the same embedding request, so every query is
normalized before it is embedded or used in a key:

    trim → lowercase → drop characters outside ``[\\w\\s?.-]``
    → collapse whitespace → trim

``?``, ``.`` and ``-`` survive because they change meaning in questions,
decimals and hyphenated terms.  ``\\w`` is Unicode-aware, so accented and
non-Latin letters are kept.

Search keys include every parameter that changes the result set (owner,
``top_k``, threshold, the sorted document filter), so two parameter
combinations never share an entry.  Embedding keys depend on the
normalized text only and are hashed to keep them short.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable

_WHITESPACE_RE = re.compile(r"\s+")
_DISALLOWED_RE = re.compile(r"[^\w\s?.\-]")

SEARCH_KEY_PREFIX = "search"
EMBEDDING_KEY_PREFIX = "emb"


def normalize_query(raw: str) -> str:
    """Return the canonical form of *raw* used for embedding and caching."""
    if not raw:
        return ""
    normalized = raw.strip().lower()
    normalized = _DISALLOWED_RE.sub("", normalized)
    normalized = _WHITESPACE_RE.sub(" ", normalized)
    return normalized.strip()


def build_search_cache_key(
    owner_id: str,
    normalized: str,
    top_k: int,
    threshold: float,
    document_ids: Iterable[str] | None = None,
) -> str:
    """Return ``search:{owner}:{query}:{top_k}:{threshold}:{ids|all}``.

    Document ids are de-duplicated and sorted so the filter order does not
    matter.  The threshold is rendered with ``repr(float(...))`` so every
    distinct value gets its own key and ``1`` and ``1.0`` share one.
    """
    ids = sorted(set(document_ids or ()))
    doc_filter = ",".join(ids) if ids else "all"
    return f"{SEARCH_KEY_PREFIX}:{owner_id}:{normalized}:{top_k}:{float(threshold)!r}:{doc_filter}"


def build_embedding_cache_key(normalized: str) -> str:
    """Return ``emb:{sha256(normalized)}``."""
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return f"{EMBEDDING_KEY_PREFIX}:{digest}"
