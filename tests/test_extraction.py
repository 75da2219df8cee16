from __future__ import annotations

import io

import pytest
from docx import Document as DocxDocument

from knowledge_engine.errors import UnsupportedFormat
from knowledge_engine.extraction import DocumentFormat, TextExtractor, detect_format

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def _docx_bytes(paragraphs: list[str], *, title: str | None = None) -> bytes:
    document = DocxDocument()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    if title:
        document.core_properties.title = title
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


@pytest.mark.parametrize(
    ("filename", "content_type", "expected"),
    [
        ("report.bin", "application/pdf", DocumentFormat.PDF),
        ("notes", DOCX_MIME, DocumentFormat.DOCX),
        ("legacy", "application/msword", DocumentFormat.DOC),
        ("Report.PDF", None, DocumentFormat.PDF),
        ("notes.docx", "application/octet-stream", DocumentFormat.DOCX),
        ("legacy.doc", None, DocumentFormat.DOC),
    ],
)
def test_detect_format_uses_mime_then_suffix(filename, content_type, expected):
    assert detect_format(filename, content_type) is expected


@pytest.mark.parametrize(("filename", "content_type"), [("notes.txt", "text/plain"), ("image.png", None), (None, None)])
def test_detect_format_rejects_other_types(filename, content_type):
    with pytest.raises(UnsupportedFormat):
        detect_format(filename, content_type)


def test_pdf_pages_become_separate_chunks(pdf_factory):
    data = pdf_factory(["Solar capacity planning overview.", "Grid battery storage notes."])

    document = TextExtractor().extract_document(data, DocumentFormat.PDF)

    assert [chunk.page for chunk in document.chunks] == [1, 2]
    assert "Solar capacity planning overview." in document.chunks[0].text
    assert "Grid battery storage notes." in document.chunks[1].text
    assert document.title == "Solar capacity planning overview."


def test_docx_paragraphs_are_chunked_with_title():
    data = _docx_bytes(["Introduction to the handbook.", "Second paragraph with details."], title="Handbook")

    document = TextExtractor().extract_document(data, DocumentFormat.DOCX)

    assert document.title == "Handbook"
    assert len(document.chunks) == 1
    assert document.chunks[0].text == "Introduction to the handbook.\n\nSecond paragraph with details."
    assert document.chunks[0].page is None


def test_docx_bytes_labelled_as_doc_are_read():
    data = _docx_bytes(["Saved with a .doc name."])

    chunks = TextExtractor().extract(data, DocumentFormat.DOC)

    assert [chunk.text for chunk in chunks] == ["Saved with a .doc name."]


def test_legacy_binary_doc_is_unsupported():
    legacy = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 512

    with pytest.raises(UnsupportedFormat, match="docx"):
        TextExtractor().extract(legacy, DocumentFormat.DOC)


def test_corrupt_pdf_is_unsupported():
    with pytest.raises(UnsupportedFormat):
        TextExtractor().extract(b"not really a pdf", DocumentFormat.PDF)


def test_empty_document_yields_no_chunks():
    document = TextExtractor().extract_document(_docx_bytes([]), DocumentFormat.DOCX)

    assert document.chunks == []


def test_extractor_respects_chunk_size():
    paragraphs = [" ".join(f"word{index}" for index in range(8)) for _ in range(3)]

    chunks = TextExtractor(max_tokens=10, overlap_tokens=0).extract(_docx_bytes(paragraphs), DocumentFormat.DOCX)

    assert len(chunks) == 3
    assert [chunk.index for chunk in chunks] == [0, 1, 2]
