"""Text helpers shared by ingestion and retrieval.

Two concerns live here:

1. **Token estimation** -- a provider-agnostic ``ceil(len / 4)`` heuristic
   used for chunk sizing and embedding usage accounting.  It matches the
   rough characters-per-token ratio of English text for OpenAI tokenizers
   and needs no model download.

2. **Extracted-text cleanup** -- PDF and plain-text extraction leave NUL
   bytes, Windows line endings, trailing spaces and long runs of blank
   lines behind.  Cleaning them before chunking keeps chunk boundaries on
   real paragraph breaks.
"""

from __future__ import annotations

import hashlib
import math
import re

_CHARS_PER_TOKEN = 4

_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_HYPHEN_BREAK_RE = re.compile(r"(\w)-\n(\w)")


def estimate_tokens(text: str) -> int:
    """Return an approximate token count for *text* (``ceil(len / 4)``)."""
    if not text:
        return 0
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def normalize_extracted_text(text: str) -> str:
    """Clean raw extracted text while keeping paragraph structure intact.

    - Removes NUL characters.
    - Converts ``\\r\\n`` / ``\\r`` to ``\\n``.
    - Re-joins words hyphenated across a line break ("docu-\\nment").
    - Strips trailing whitespace on each line.
    - Collapses three or more newlines into a single paragraph break.
    """
    if not text:
        return ""
    cleaned = text.replace("\x00", "")
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _HYPHEN_BREAK_RE.sub(r"\1\2", cleaned)
    cleaned = _TRAILING_SPACE_RE.sub("\n", cleaned)
    cleaned = _BLANK_RUN_RE.sub("\n\n", cleaned)
    return cleaned.strip()


def content_hash(data: bytes) -> str:
    """Return the SHA-256 hex digest used for duplicate-upload detection."""
    return hashlib.sha256(data).hexdigest()
