"""Text extraction for uploaded PDF and word-processor documents."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List

from docx import Document as DocxDocument
from pypdf import PdfReader

from .chunker import DEFAULT_OVERLAP_TOKENS, MAX_TOKENS, Chunk, TextBlock, chunk_blocks
from .errors import UnsupportedFormat

logger = logging.getLogger(__name__)


class DocumentFormat(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    DOC = "doc"


_MIME_FORMATS: dict[str, DocumentFormat] = {
    "application/pdf": DocumentFormat.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocumentFormat.DOCX,
    "application/msword": DocumentFormat.DOC,
}

_SUFFIX_FORMATS: dict[str, DocumentFormat] = {
    ".pdf": DocumentFormat.PDF,
    ".docx": DocumentFormat.DOCX,
    ".doc": DocumentFormat.DOC,
}


@dataclass(slots=True)
class ExtractedDocument:
    format: DocumentFormat
    title: str | None
    chunks: List[Chunk] = field(default_factory=list)


def detect_format(filename: str | None, content_type: str | None = None) -> DocumentFormat:
    """Resolve the document format from its MIME type, falling back to the filename suffix.

    Raises:
        UnsupportedFormat: when neither the MIME type nor the suffix names a
            PDF or word-processor document.
    """

    if content_type:
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime in _MIME_FORMATS:
            return _MIME_FORMATS[mime]
    suffix = Path(filename or "").suffix.lower()
    if suffix in _SUFFIX_FORMATS:
        return _SUFFIX_FORMATS[suffix]
    raise UnsupportedFormat(
        f"Unsupported file type for '{filename or 'document'}'. Upload a PDF or Word document.",
        details={"filename": filename, "content_type": content_type},
    )


class TextExtractor:
    """Convert raw document bytes into ordered text chunks.

    PDF pages are kept as separate blocks so a chunk never spans a page break;
    Word documents are chunked by paragraph. Extraction has no side effects.
    """

    def __init__(
        self,
        *,
        max_tokens: int = MAX_TOKENS,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
    ) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be a positive integer")
        self._max_tokens = max_tokens
        self._overlap_tokens = max(0, overlap_tokens)

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    def extract(self, data: bytes, format: DocumentFormat) -> List[Chunk]:
        return self.extract_document(data, format).chunks

    def extract_document(self, data: bytes, format: DocumentFormat) -> ExtractedDocument:
        """Extract chunks and a best-effort title.

        Raises:
            UnsupportedFormat: when ``format`` is not supported or the bytes
                cannot be parsed as a document of that format.
        """

        if format is DocumentFormat.PDF:
            blocks, title = self._read_pdf(data)
        elif format in (DocumentFormat.DOCX, DocumentFormat.DOC):
            blocks, title = self._read_word(data, format)
        else:
            raise UnsupportedFormat(f"Unsupported document format: {format!r}")

        chunks = chunk_blocks(
            blocks,
            max_tokens=self._max_tokens,
            overlap_tokens=self._overlap_tokens,
        )
        if title is None:
            title = _first_line(blocks)
        logger.debug("extract.completed format=%s blocks=%s chunks=%s", format.value, len(blocks), len(chunks))
        return ExtractedDocument(format=format, title=title, chunks=chunks)

    @staticmethod
    def _read_pdf(data: bytes) -> tuple[List[TextBlock], str | None]:
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
            metadata = reader.metadata
        except Exception as exc:
            raise UnsupportedFormat(f"Failed to extract text from PDF: {exc}") from exc

        title = None
        if metadata is not None and metadata.title:
            title = str(metadata.title).strip() or None

        blocks = [
            TextBlock(text=text, page=number)
            for number, text in enumerate(pages, start=1)
            if text.strip()
        ]
        return blocks, title

    @staticmethod
    def _read_word(data: bytes, format: DocumentFormat) -> tuple[List[TextBlock], str | None]:
        try:
            document = DocxDocument(io.BytesIO(data))
        except Exception as exc:
            if format is DocumentFormat.DOC:
                raise UnsupportedFormat(
                    "Legacy .doc files cannot be read; save the document as .docx and upload again."
                ) from exc
            raise UnsupportedFormat(f"Failed to extract text from DOCX: {exc}") from exc

        paragraphs = [paragraph.text.strip() for paragraph in document.paragraphs if paragraph.text.strip()]
        title = (document.core_properties.title or "").strip() or None
        if not paragraphs:
            return [], title
        return [TextBlock(text="\n\n".join(paragraphs))], title


def _first_line(blocks: List[TextBlock]) -> str | None:
    for block in blocks:
        for line in block.text.splitlines():
            stripped = line.strip()
            if stripped:
                return stripped[:160]
    return None


__all__ = ["DocumentFormat", "ExtractedDocument", "TextExtractor", "detect_format"]
