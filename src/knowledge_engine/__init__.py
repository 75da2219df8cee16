"""Knowledge ingestion and semantic similarity search service."""

from __future__ import annotations

from .config import Settings
from .vector_store import EmbeddingRecord, EntityMetadata, SearchOptions, SearchResult, VectorStore

__all__ = [
    "Settings",
    "EmbeddingService",
    "EmbeddingBackend",
    "EmbeddingRecord",
    "EntityMetadata",
    "SearchOptions",
    "SearchResult",
    "VectorStore",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name in {"EmbeddingService", "EmbeddingBackend"}:
        from .embeddings import EmbeddingBackend, EmbeddingService

        return {"EmbeddingService": EmbeddingService, "EmbeddingBackend": EmbeddingBackend}[name]
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'knowledge_engine' has no attribute {name}")
