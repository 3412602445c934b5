"""Recursive semantic chunking with overlapping windows.

Splits extracted text into :class:`~src.models.rag.TextChunk` objects sized
for embedding models (~500 estimated tokens with ~50 tokens of overlap).

The strategy has two phases:

1. **Recursive splitting** -- the text is split on the most coarse separator
   it contains (paragraph, then line, sentence, clause, word).  Any piece
   still over budget is split again with the next separator; as a last
   resort it is cut into fixed character windows.  Separators stay attached
   to the piece before them, so the pieces concatenate back to the input.

2. **Merging with overlap** -- pieces are packed greedily into chunks up to
   the budget.  When a chunk is flushed, the next one starts with the
   trailing pieces of the previous chunk (up to the overlap budget) so a
   sentence near a boundary appears whole in at least one chunk.  A
   trailing piece too large for the overlap is split again so the
   overlap is taken from its last sentences or words.

Each chunk records the character offset where it starts in the source text.
The offset is found with a forward search from the previous chunk's start,
so it is exact for text the chunker received and best-effort otherwise.
"""

from __future__ import annotations

import bisect
import math
from collections.abc import Callable, Sequence

import structlog

from src.config.settings import ChunkingConfig
from src.models.rag import TextChunk
from src.utils.errors import ChunkValidationError, InvalidRequestError
from src.utils.text import estimate_tokens

logger = structlog.get_logger(logger_name=__name__)

DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", "! ", "? ", ", ", " ")

# Ratio of short chunks tolerated by validate(), and the chunk count below
# which a single short remainder chunk is not judged at all.
_MAX_SHORT_RATIO = 0.1
_MIN_CHUNKS_FOR_RATIO = 10


class SemanticChunker:
    """Splits text into overlapping chunks that respect natural boundaries.

    Parameters
    ----------
    chunk_size:
        Maximum chunk length, measured by *length_function* (default 500).
    chunk_overlap:
        Maximum length carried over from the previous chunk (default 50).
    separators:
        Split points in order of preference, coarsest first.
    length_function:
        Measures a piece of text; defaults to the ``ceil(len / 4)`` token
        estimate.
    min_chunk_chars:
        Chunks shorter than this many characters count as degenerate in
        :meth:`validate`.
    """

    def __init__(
        self,
        chunk_size: int = 500,
        chunk_overlap: int = 50,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
        length_function: Callable[[str], int] = estimate_tokens,
        min_chunk_chars: int = 50,
    ) -> None:
        if chunk_size <= 0:
            raise InvalidRequestError(message="chunk_size must be positive", field="chunk_size")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise InvalidRequestError(
                message="chunk_overlap must be between 0 and chunk_size - 1",
                field="chunk_overlap",
            )
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._separators = tuple(s for s in separators if s)
        self._length = length_function
        self._min_chunk_chars = min_chunk_chars

    @classmethod
    def from_config(cls, config: ChunkingConfig) -> SemanticChunker:
        return cls(
            chunk_size=config.chunk_size,
            chunk_overlap=config.chunk_overlap,
            min_chunk_chars=config.min_chunk_chars,
        )

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def chunk_overlap(self) -> int:
        return self._chunk_overlap

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def chunk(self, text: str, page_offsets: Sequence[int] | None = None) -> list[TextChunk]:
        """Split *text* into ordered, overlapping :class:`TextChunk` objects.

        Parameters
        ----------
        text:
            The full text to chunk.
        page_offsets:
            Character offset at which each page begins; when given, every
            chunk gets the 1-based number of the page its start falls on.

        Returns
        -------
        list[TextChunk]
            Chunks with dense ``chunk_index`` values ``0..n-1``.  Blank
            input returns an empty list.
        """
        if not text or not text.strip():
            return []

        pieces = self._split(text, self._separators)
        chunk_texts = self._merge(pieces)

        chunks: list[TextChunk] = []
        search_from = 0
        for chunk_text in chunk_texts:
            start = text.find(chunk_text, search_from)
            if start < 0:
                start = search_from
            search_from = start
            chunks.append(
                TextChunk(
                    chunk_index=len(chunks),
                    text=chunk_text,
                    start_offset=start,
                    token_count=estimate_tokens(chunk_text),
                    page_number=self._page_for(start, page_offsets),
                )
            )

        logger.debug(
            "chunking_complete",
            num_chunks=len(chunks),
            avg_tokens=sum(c.token_count for c in chunks) // len(chunks) if chunks else 0,
        )
        return chunks

    def validate(self, chunks: Sequence[TextChunk]) -> None:
        """Reject chunk sets that point at a preprocessing bug.

        Raises
        ------
        ChunkValidationError
            If any chunk is blank, more than 10% of chunks are shorter than
            ``min_chunk_chars`` (judged once there are at least ten chunks),
            or two chunks have identical text.
        """
        issues: list[str] = []

        empty = sum(1 for c in chunks if not c.text.strip())
        if empty:
            issues.append(f"{empty} empty chunks found")

        if len(chunks) >= _MIN_CHUNKS_FOR_RATIO:
            short = sum(1 for c in chunks if len(c.text) < self._min_chunk_chars)
            if short > len(chunks) * _MAX_SHORT_RATIO:
                issues.append(f"{short} of {len(chunks)} chunks are unusually short")

        if len({c.text for c in chunks}) < len(chunks):
            issues.append("Duplicate chunks detected")

        if issues:
            logger.warning("chunk_validation_failed", issues=issues, num_chunks=len(chunks))
            raise ChunkValidationError(
                message=f"Chunk validation failed: {'; '.join(issues)}",
                issues=issues,
            )

    def estimate_chunk_count(self, text: str) -> int:
        """Return a quick chunk-count estimate for progress reporting."""
        if not text:
            return 0
        return math.ceil(estimate_tokens(text) / self._chunk_size)

    # ------------------------------------------------------------------
    # Recursive splitting
    # ------------------------------------------------------------------

    def _split(
        self,
        text: str,
        separators: Sequence[str],
        limit: int | None = None,
        hard: bool = True,
    ) -> list[str]:
        """Return pieces of *text*, each within *limit*, that concatenate to *text*.

        *limit* defaults to the chunk size.  With ``hard=False`` a piece
        that no separator can reduce is returned as-is instead of being cut
        into character windows.
        """
        if limit is None:
            limit = self._chunk_size
        if self._length(text) <= limit:
            return [text]

        for position, separator in enumerate(separators):
            if separator not in text:
                continue
            pieces: list[str] = []
            for piece in self._split_keeping_separator(text, separator):
                if self._length(piece) <= limit:
                    pieces.append(piece)
                else:
                    pieces.extend(self._split(piece, separators[position + 1 :], limit, hard))
            return pieces

        return self._hard_split(text) if hard else [text]

    @staticmethod
    def _split_keeping_separator(text: str, separator: str) -> list[str]:
        parts = text.split(separator)
        pieces = [part + separator for part in parts[:-1]]
        if parts[-1]:
            pieces.append(parts[-1])
        return [p for p in pieces if p]

    def _hard_split(self, text: str) -> list[str]:
        """Cut *text* into the largest character windows that fit the budget."""
        pieces: list[str] = []
        start = 0
        while start < len(text):
            remaining = text[start:]
            measured = max(1, self._length(remaining))
            window = max(1, len(remaining) * self._chunk_size // measured)
            while window > 1 and self._length(remaining[:window]) > self._chunk_size:
                window -= 1
            pieces.append(remaining[:window])
            start += window
        return pieces

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def _merge(self, pieces: list[str]) -> list[str]:
        """Pack pieces into chunks, seeding each chunk with overlap from the last."""
        chunks: list[str] = []
        current: list[tuple[str, int]] = []
        current_length = 0

        for piece in pieces:
            piece_length = self._length(piece)
            if current and current_length + piece_length > self._chunk_size:
                self._flush(chunks, current)
                current, current_length = self._overlap_tail(current, piece_length)
            current.append((piece, piece_length))
            current_length += piece_length

        if current:
            self._flush(chunks, current)
        return chunks

    @staticmethod
    def _flush(chunks: list[str], parts: list[tuple[str, int]]) -> None:
        chunk_text = "".join(text for text, _ in parts).strip()
        # Overlap alone can reproduce the previous chunk; skip it.
        if chunk_text and (not chunks or chunks[-1] != chunk_text):
            chunks.append(chunk_text)

    def _overlap_tail(
        self, parts: list[tuple[str, int]], next_length: int
    ) -> tuple[list[tuple[str, int]], int]:
        """Return the trailing *parts* that fit both the overlap and the room left.

        When the last part alone is over budget (a long paragraph, say), it
        is split again on its sentence and word boundaries and the tail is
        taken from those finer pieces instead.
        """
        budget = min(self._chunk_overlap, self._chunk_size - next_length)
        if budget <= 0 or not parts:
            return [], 0

        last_text, last_length = parts[-1]
        if last_length > budget:
            candidates = [
                (piece, self._length(piece))
                for piece in self._split(last_text, self._separators, budget, hard=False)
            ]
        else:
            candidates = parts

        tail: list[tuple[str, int]] = []
        total = 0
        for text, length in reversed(candidates):
            if total + length > budget:
                break
            tail.insert(0, (text, length))
            total += length

        if not "".join(text for text, _ in tail).strip():
            return [], 0
        return tail, total

    @staticmethod
    def _page_for(offset: int, page_offsets: Sequence[int] | None) -> int | None:
        if not page_offsets:
            return None
        return max(1, bisect.bisect_right(page_offsets, offset))
