"""Unit tests for query normalization and cache-key construction."""

from __future__ import annotations

import hashlib

import pytest

from src.services.retrieval.query_preprocessor import (
    build_embedding_cache_key,
    build_search_cache_key,
    normalize_query,
)


class TestNormalizeQuery:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("What is RAG?", "what is rag?"),
            ("  what   is\trag?\n", "what is rag?"),
            ("Revenue (2023) & costs!", "revenue 2023 costs"),
            ("v1.2 of the follow-up plan", "v1.2 of the follow-up plan"),
            ("Café Über naïve", "café über naïve"),
            ("snake_case_name", "snake_case_name"),
        ],
    )
    def test_normalization(self, raw: str, expected: str) -> None:
        assert normalize_query(raw) == expected

    def test_equivalent_queries_normalize_identically(self) -> None:
        assert normalize_query("What is RAG?") == normalize_query("  what is   rag? ")

    def test_empty_and_symbol_only_queries(self) -> None:
        assert normalize_query("") == ""
        assert normalize_query("   ") == ""
        assert normalize_query("!!! ### ***") == ""

    def test_idempotent(self) -> None:
        once = normalize_query("  Mixed CASE, with   punctuation!? ")
        assert normalize_query(once) == once


class TestSearchCacheKey:
    def test_key_format(self) -> None:
        key = build_search_cache_key("alice", "what is rag?", 5, 0.7, None)
        assert key == "search:alice:what is rag?:5:0.7:all"

    def test_threshold_formatting(self) -> None:
        assert build_search_cache_key("a", "q", 3, 1.0).endswith(":3:1.0:all")
        assert build_search_cache_key("a", "q", 3, 0).endswith(":3:0.0:all")
        assert build_search_cache_key("a", "q", 3, 1) == build_search_cache_key("a", "q", 3, 1.0)

    def test_near_equal_thresholds_do_not_collide(self) -> None:
        first = build_search_cache_key("a", "q", 5, 0.7)
        second = build_search_cache_key("a", "q", 5, 0.7000001)
        assert first != second
        assert second.endswith(":5:0.7000001:all")

    def test_document_filter_order_does_not_matter(self) -> None:
        first = build_search_cache_key("a", "q", 5, 0.7, ["d2", "d1", "d2"])
        second = build_search_cache_key("a", "q", 5, 0.7, ["d1", "d2"])
        assert first == second
        assert first.endswith(":d1,d2")

    def test_empty_filter_means_all(self) -> None:
        assert build_search_cache_key("a", "q", 5, 0.7, []).endswith(":all")

    def test_parameters_change_the_key(self) -> None:
        base = build_search_cache_key("a", "q", 5, 0.7)
        assert base != build_search_cache_key("b", "q", 5, 0.7)
        assert base != build_search_cache_key("a", "q", 6, 0.7)
        assert base != build_search_cache_key("a", "q", 5, 0.8)
        assert base != build_search_cache_key("a", "q", 5, 0.7, ["d1"])


class TestEmbeddingCacheKey:
    def test_key_is_sha256_of_normalized_text(self) -> None:
        digest = hashlib.sha256("what is rag?".encode()).hexdigest()
        assert build_embedding_cache_key("what is rag?") == f"emb:{digest}"

    def test_key_does_not_depend_on_search_parameters(self) -> None:
        assert build_embedding_cache_key("q") == build_embedding_cache_key("q")
        assert build_embedding_cache_key("q") != build_embedding_cache_key("q2")
