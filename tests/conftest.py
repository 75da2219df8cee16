from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator

import pytest
from qdrant_client import QdrantClient

from knowledge_engine.sources import JsonSourceRegistry
from knowledge_engine.vector_store import EmbeddingRecord, EntityMetadata, QdrantRecordStore, VectorStore


class FakeEmbeddingService:
    """Deterministic embeddings keyed by marker words found in the text."""

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        *,
        dimension: int = 3,
        fail_on_call: int | None = None,
        error: Exception | None = None,
    ) -> None:
        self.dimension = dimension
        self._vectors = vectors or {}
        self._fail_on_call = fail_on_call
        self._error = error
        self.calls: list[str] = []
        self.closed = False

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self._fail_on_call is not None and len(self.calls) == self._fail_on_call:
            assert self._error is not None
            raise self._error
        for marker, vector in self._vectors.items():
            if marker in text:
                return list(vector)
        return [1.0] + [0.0] * (self.dimension - 1)

    def embed_batch(self, texts):
        return [self.embed(text) for text in texts]

    def close(self) -> None:
        self.closed = True


def build_pdf(pages: list[str]) -> bytes:
    """Build a minimal PDF with one line of Helvetica text per page."""

    page_count = len(pages)
    objects: list[bytes] = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        (
            "<< /Type /Pages /Kids ["
            + " ".join(f"{4 + 2 * index} 0 R" for index in range(page_count))
            + f"] /Count {page_count} >>"
        ).encode(),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    for index, text in enumerate(pages):
        content_id = 5 + 2 * index
        objects.append(
            (
                "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                f"/Contents {content_id} 0 R /Resources << /Font << /F1 3 0 R >> >> >>"
            ).encode()
        )
        escaped = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
        stream = f"BT /F1 12 Tf 72 720 Td ({escaped}) Tj ET".encode()
        objects.append(b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream")

    output = bytearray(b"%PDF-1.4\n")
    offsets: list[int] = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(output))
        output += f"{number} 0 obj\n".encode() + body + b"\nendobj\n"
    xref_offset = len(output)
    output += f"xref\n0 {len(objects) + 1}\n".encode()
    output += b"0000000000 65535 f \n"
    for offset in offsets:
        output += f"{offset:010d} 00000 n \n".encode()
    output += (
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_offset}\n%%EOF\n"
    ).encode()
    return bytes(output)


def make_record(
    entity_id: str,
    vector: list[float],
    *,
    name: str | None = None,
    domain: str = "atlas",
    entity_type: str = "capability",
    source_id: str | None = None,
) -> EmbeddingRecord:
    return EmbeddingRecord(
        entity_id=entity_id,
        vector=tuple(vector),
        metadata=EntityMetadata(
            name=name if name is not None else f"Entity {entity_id}",
            description=f"Description of {entity_id}",
            entity_type=entity_type,
            domain=domain,
        ),
        source_id=source_id,
    )


@pytest.fixture
def qdrant_client() -> QdrantClient:
    return QdrantClient(location=":memory:")


@pytest.fixture
def vector_store(qdrant_client: QdrantClient) -> Iterator[VectorStore]:
    store = VectorStore(QdrantRecordStore(qdrant_client, "entities", vector_size=3), dimension=3)
    store.open()
    yield store
    store.close()


@pytest.fixture
def source_registry(tmp_path: Path) -> JsonSourceRegistry:
    return JsonSourceRegistry(tmp_path / "sources.json")


@pytest.fixture
def pdf_factory() -> Callable[[list[str]], bytes]:
    return build_pdf


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def fake_embeddings_factory():
    return FakeEmbeddingService
