"""Error taxonomy shared by the ingestion and search services."""

from __future__ import annotations

from typing import Any


class KnowledgeError(Exception):
    """Base class for every error surfaced by the knowledge engine."""

    code: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class InvalidRequest(KnowledgeError):
    """A request is missing required fields or carries malformed values."""

    code = "invalid_request"
    status_code = 400


class UnsupportedFormat(KnowledgeError):
    """The uploaded document is not a PDF or word-processor file we can read."""

    code = "unsupported_format"
    status_code = 400


class NotFound(KnowledgeError):
    code = "not_found"
    status_code = 404


class EntityNotIndexed(NotFound):
    """A similarity query referenced an entity with no stored embedding."""

    code = "entity_not_indexed"


class SourceNotFound(NotFound):
    code = "source_not_found"


class EmbeddingProviderError(KnowledgeError):
    """Transport failure or malformed response from the embedding provider."""

    code = "embedding_provider_error"
    status_code = 502


class RateLimited(EmbeddingProviderError):
    """The embedding provider throttled the request; callers may retry later."""

    code = "rate_limited"
    status_code = 429


class StorageError(KnowledgeError):
    """Reading or writing persisted state failed."""

    code = "storage_error"
    status_code = 500


__all__ = [
    "KnowledgeError",
    "InvalidRequest",
    "UnsupportedFormat",
    "NotFound",
    "EntityNotIndexed",
    "SourceNotFound",
    "EmbeddingProviderError",
    "RateLimited",
    "StorageError",
]
