"""Plain-text extraction from uploaded document bytes.

Reads PDFs with PyMuPDF (fitz) page-by-page and decodes plain-text formats
(``.txt``, ``.md``) as UTF-8.  The result is an :class:`ExtractedText` with
normalized text, the page count, title/author metadata and the character
offset at which each page starts, which the chunker uses to attach a page
number to every chunk.

Format detection trusts the content over the filename: any payload that
starts with the ``%PDF-`` signature is parsed as a PDF, and a ``.pdf`` file
without it is rejected.  Failures are raised as
:class:`~src.utils.errors.DocumentError` subclasses whose messages are safe
to show to the uploader.

Extraction is CPU-bound and synchronous; the orchestrator runs it in a
worker thread.
"""

from __future__ import annotations

from pathlib import Path

import fitz  # PyMuPDF -- the "fitz" import name is a PyMuPDF convention
import structlog

from src.models.rag import ExtractedText
from src.utils.errors import (
    CorruptedDocumentError,
    EncryptedDocumentError,
    InvalidRequestError,
    UnsupportedFormatError,
)
from src.utils.text import normalize_extracted_text

logger = structlog.get_logger(logger_name=__name__)

_PDF_MAGIC = b"%PDF-"
_PDF_EXTENSIONS = frozenset({".pdf"})
_TEXT_EXTENSIONS = frozenset({".txt", ".md"})
SUPPORTED_EXTENSIONS = _PDF_EXTENSIONS | _TEXT_EXTENSIONS

# Pages are joined with a paragraph break so chunk boundaries can fall on them.
_PAGE_SEPARATOR = "\n\n"


class TextExtractor:
    """Converts raw document bytes into :class:`ExtractedText`.

    Parameters
    ----------
    max_file_size_mb:
        Upper bound enforced by :meth:`validate_upload`.
    """

    def __init__(self, max_file_size_mb: int = 50) -> None:
        self._max_bytes = max_file_size_mb * 1024 * 1024
        self._max_file_size_mb = max_file_size_mb

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def validate_upload(self, filename: str, size: int) -> None:
        """Reject uploads with an unsupported extension or an invalid size.

        Raises
        ------
        InvalidRequestError
            With ``field`` set to ``"filename"`` or ``"file_size"``.
        """
        suffix = Path(filename or "").suffix.lower()
        if suffix not in SUPPORTED_EXTENSIONS:
            raise InvalidRequestError(
                message=(
                    f"Unsupported file type {suffix or '(none)'!r}. "
                    f"Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
                ),
                field="filename",
            )
        if size <= 0:
            raise InvalidRequestError(message="File is empty", field="file_size")
        if size > self._max_bytes:
            raise InvalidRequestError(
                message=f"File exceeds the maximum size of {self._max_file_size_mb} MB",
                field="file_size",
            )

    def extract(self, data: bytes, filename: str) -> ExtractedText:
        """Extract normalized text and metadata from *data*.

        Parameters
        ----------
        data:
            Raw document bytes.
        filename:
            Original filename; its extension selects the plain-text decoder
            when the bytes are not a PDF.

        Raises
        ------
        UnsupportedFormatError
            The bytes are neither a PDF nor decodable plain text.
        EncryptedDocumentError
            The PDF is password-protected.
        CorruptedDocumentError
            The PDF cannot be opened or parsed.
        """
        suffix = Path(filename or "").suffix.lower()

        if data.startswith(_PDF_MAGIC):
            result = self._extract_pdf(data)
        elif suffix in _PDF_EXTENSIONS:
            raise UnsupportedFormatError(message="File is not a valid PDF document")
        elif suffix in _TEXT_EXTENSIONS:
            result = self._extract_plain_text(data)
        else:
            raise UnsupportedFormatError()

        logger.info(
            "text_extracted",
            filename=filename,
            pages=result.page_count,
            characters=len(result.text),
            empty=result.is_empty,
        )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _extract_pdf(self, data: bytes) -> ExtractedText:
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as exc:
            logger.warning("pdf_open_failed", error=str(exc))
            raise CorruptedDocumentError() from exc

        try:
            if doc.needs_pass:
                raise EncryptedDocumentError()
            # MuPDF repairs some broken files into an empty document.
            if doc.page_count == 0:
                raise CorruptedDocumentError()

            page_texts: list[str] = []
            try:
                for page in doc:
                    page_texts.append(normalize_extracted_text(page.get_text("text")))
            except Exception as exc:
                logger.warning("pdf_parse_failed", error=str(exc))
                raise CorruptedDocumentError() from exc

            metadata = doc.metadata or {}
            page_count = doc.page_count
        finally:
            doc.close()

        text, page_offsets = self._join_pages(page_texts)
        return ExtractedText(
            text=text,
            page_count=page_count,
            title=(metadata.get("title") or "").strip() or None,
            author=(metadata.get("author") or "").strip() or None,
            creation_date=(metadata.get("creationDate") or "").strip() or None,
            page_offsets=page_offsets,
        )

    @staticmethod
    def _extract_plain_text(data: bytes) -> ExtractedText:
        try:
            decoded = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise UnsupportedFormatError(message="Text file is not valid UTF-8") from exc
        return ExtractedText(
            text=normalize_extracted_text(decoded),
            page_count=1,
            page_offsets=[0],
        )

    @staticmethod
    def _join_pages(page_texts: list[str]) -> tuple[str, list[int]]:
        """Join non-empty pages and record where each page starts.

        A page without text gets the offset where the next text would
        begin, so offsets stay non-decreasing.
        """
        parts: list[str] = []
        offsets: list[int] = []
        position = 0
        for page_text in page_texts:
            offsets.append(position)
            if page_text:
                parts.append(page_text)
                position += len(page_text) + len(_PAGE_SEPARATOR)
        return _PAGE_SEPARATOR.join(parts), offsets
