"""Embedding service supporting OpenAI and Ollama backends."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from enum import Enum, auto
from typing import Any, Final, List

import httpx
import openai
from openai import OpenAI

from .config import Settings
from .errors import EmbeddingProviderError, InvalidRequest, RateLimited

logger = logging.getLogger(__name__)

_OPENAI_BATCH_SIZE: Final[int] = 100
_WHITESPACE_RE = re.compile(r"\s+")


class EmbeddingBackend(Enum):
    """Supported embedding backends."""

    OPENAI = auto()
    OLLAMA = auto()


def clean_text(text: str, *, max_chars: int = 8000) -> str:
    """Collapse whitespace and truncate to the provider's input budget."""

    return _WHITESPACE_RE.sub(" ", text).strip()[:max_chars]


def build_embedding_text(
    name: str,
    description: str | None = None,
    entity_type: str | None = None,
    extra: Mapping[str, Any] | None = None,
    *,
    max_chars: int = 8000,
) -> str:
    """Assemble the text embedded for a catalogued entity."""

    parts = [name.strip()]
    if description and description.strip():
        parts.append(description.strip())
    for key, value in (extra or {}).items():
        if value is None or value == "" or value == []:
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(item) for item in value)
        parts.append(f"{key}: {value}")
    if entity_type:
        parts.append(f"Type: {entity_type}")
    return clean_text("\n".join(part for part in parts if part), max_chars=max_chars)


def extract_keywords(name: str, metadata: Mapping[str, Any] | None = None) -> tuple[str, ...]:
    """Collect the lowercased terms keyword search matches against, in first-seen order."""

    found: dict[str, None] = {}

    def add(value: Any) -> None:
        term = str(value).strip().lower()
        if term:
            found.setdefault(term, None)

    for word in name.lower().split():
        if len(word) > 2:
            add(word)
    metadata = metadata or {}
    for key in ("keywords", "tags"):
        values = metadata.get(key) or ()
        if isinstance(values, str):
            values = (values,)
        for value in values:
            add(value)
    sector = metadata.get("sector")
    if isinstance(sector, str):
        add(sector)
    elif isinstance(sector, Mapping):
        if sector.get("primary"):
            add(sector["primary"])
        for signal in sector.get("cross_sector_signals") or ():
            add(signal)
    return tuple(found)


class EmbeddingService:
    """High-level interface for embedding generation.

    Every public call maps provider failures onto the service's error types:
    throttling raises :class:`RateLimited`; transport failures, non-2xx
    responses and malformed payloads raise :class:`EmbeddingProviderError`.
    Nothing is retried here.
    """

    def __init__(self, settings: Settings, *, validate: bool = True) -> None:
        self._settings = settings
        self._backend = EmbeddingBackend.OLLAMA if settings.is_ollama_embedding_backend else EmbeddingBackend.OPENAI
        self._max_chars = max(1, settings.embedding_max_chars)
        self._dimension: int | None = None
        self._openai_client: OpenAI | None = None
        self._ollama_model: str | None = None
        self._ollama_base_url: str | None = None
        self._ollama_client: httpx.Client | None = None

        if self._backend is EmbeddingBackend.OPENAI:
            self._setup_openai(validate)
        else:
            self._setup_ollama(validate)

    @classmethod
    def from_env(cls, *, validate: bool = True) -> "EmbeddingService":
        """Create the embedding service from environment configuration."""

        return cls(Settings.from_env(), validate=validate)

    @property
    def backend(self) -> EmbeddingBackend:
        return self._backend

    @property
    def dimension(self) -> int:
        """Return the embedding dimensionality for the active backend."""

        if self._dimension is None:
            msg = "Embedding dimension is not initialised."
            raise RuntimeError(msg)
        return self._dimension

    def embed(self, text: str) -> List[float]:
        """Generate an embedding for a single piece of text (one outbound call)."""

        cleaned = self._prepare(text)
        if self._backend is EmbeddingBackend.OPENAI:
            return self._openai_embed([cleaned])[0]
        return self._ollama_embed(cleaned)

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Generate embeddings for several texts, preserving input order."""

        if not texts:
            return []
        cleaned = [self._prepare(text) for text in texts]
        if self._backend is EmbeddingBackend.OLLAMA:
            return [self._ollama_embed(text) for text in cleaned]

        vectors: list[list[float]] = []
        for offset in range(0, len(cleaned), _OPENAI_BATCH_SIZE):
            vectors.extend(self._openai_embed(cleaned[offset : offset + _OPENAI_BATCH_SIZE]))
        return vectors

    def close(self) -> None:
        """Release any underlying client resources."""

        if self._ollama_client is not None:
            self._ollama_client.close()
            self._ollama_client = None

    # Internal helpers -------------------------------------------------

    def _prepare(self, text: str) -> str:
        cleaned = clean_text(text, max_chars=self._max_chars)
        if not cleaned:
            raise InvalidRequest("Cannot embed empty text")
        return cleaned

    def _check_dimension(self, vector: List[float]) -> List[float]:
        if self._dimension is not None and len(vector) != self._dimension:
            msg = f"Embedding dimension changed from {self._dimension} to {len(vector)}."
            raise EmbeddingProviderError(msg)
        return vector

    def _setup_openai(self, validate: bool) -> None:
        api_key = self._settings.openai_api_key or None
        if not api_key:
            msg = "OPENAI_API_KEY must be set when using the OpenAI embedding backend."
            raise ValueError(msg)

        self._dimension = self._settings.openai_embedding_dimension
        self._openai_client = OpenAI(api_key=api_key, timeout=self._settings.openai_request_timeout)

        if validate:
            # Ensure the configured model is accessible; raises if not available.
            self._openai_client.models.retrieve(self._settings.embedding_model)

    def _openai_embed(self, inputs: List[str]) -> List[List[float]]:
        assert self._openai_client is not None  # for mypy
        try:
            result = self._openai_client.embeddings.create(
                model=self._settings.embedding_model,
                input=inputs,
            )
        except openai.RateLimitError as exc:
            logger.warning("embedding.rate_limited backend=openai inputs=%s", len(inputs))
            raise RateLimited(f"OpenAI throttled the embedding request: {exc}") from exc
        except openai.OpenAIError as exc:
            raise EmbeddingProviderError(f"OpenAI embedding request failed: {exc}") from exc

        data = getattr(result, "data", None)
        if not isinstance(data, list) or len(data) != len(inputs):
            raise EmbeddingProviderError("OpenAI embedding response did not return the expected number of vectors.")
        ordered = sorted(data, key=lambda item: getattr(item, "index", 0))
        return [self._check_dimension(_as_vector(item.embedding)) for item in ordered]

    def _setup_ollama(self, validate: bool) -> None:
        model, base_url = self._settings.ollama_embedding_endpoint
        self._ollama_model = model
        self._ollama_base_url = base_url
        self._ollama_client = httpx.Client(
            base_url=self._ollama_base_url,
            timeout=self._settings.ollama_request_timeout,
        )

        vector = self._ollama_embed("__dimension_probe__")
        if not vector:
            msg = f"Ollama embedding backend '{model}' returned no data."
            raise ValueError(msg)
        self._dimension = len(vector)

    def _ollama_embed(self, text: str) -> List[float]:
        if self._ollama_client is None or not self._ollama_model:
            msg = "Ollama embedding backend is not initialised."
            raise RuntimeError(msg)

        # Build a fully-qualified URL to preserve any base path prefix.
        assert self._ollama_base_url is not None  # for type checkers
        url = f"{self._ollama_base_url.rstrip('/')}/api/embeddings"
        payload = {"model": self._ollama_model, "prompt": text}

        try:
            response = self._ollama_client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 429:
                logger.warning("embedding.rate_limited backend=ollama model=%s", self._ollama_model)
                raise RateLimited("Ollama throttled the embedding request") from exc
            raise EmbeddingProviderError(
                f"Ollama embedding request failed with status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise EmbeddingProviderError(f"Ollama embedding request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingProviderError("Ollama embedding response was not valid JSON.") from exc
        embedding = data.get("embedding") if isinstance(data, dict) else None
        if embedding is None:
            msg = "Ollama embedding response did not include an 'embedding' field."
            raise EmbeddingProviderError(msg)
        return self._check_dimension(_as_vector(embedding))


def _as_vector(values: Any) -> List[float]:
    try:
        vector = [float(value) for value in values]
    except (TypeError, ValueError) as exc:
        raise EmbeddingProviderError("Embedding response contained non-numeric values.") from exc
    if not vector:
        raise EmbeddingProviderError("Embedding response contained an empty vector.")
    return vector


__all__ = ["EmbeddingBackend", "EmbeddingService", "build_embedding_text", "clean_text", "extract_keywords"]
