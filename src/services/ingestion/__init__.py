"""Document ingestion building blocks.

1. **Extract** (text_extractor.py / TextExtractor) -- PDF and plain-text
   bytes become normalized text with page offsets and title/author
   metadata.

2. **Chunk** (chunker.py / SemanticChunker) -- Text is split recursively on
   paragraph, line, sentence and word boundaries into ~500-token windows
   that overlap by ~50 tokens.

Embedding and storage are separate services; the ingestion orchestrator in
``src/pipeline`` sequences all four stages per document.
"""

from src.services.ingestion.chunker import SemanticChunker
from src.services.ingestion.text_extractor import SUPPORTED_EXTENSIONS, TextExtractor

__all__ = [
    "SUPPORTED_EXTENSIONS",
    "SemanticChunker",
    "TextExtractor",
]
