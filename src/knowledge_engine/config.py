"""Configuration helpers for the knowledge engine service."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from dotenv import load_dotenv

if TYPE_CHECKING:  # pragma: no cover
    from .observability import MetricsRecorder
    from .vector_store import SearchOptions

load_dotenv()

_DEFAULT_EMBEDDING_MODEL: Final[str] = "text-embedding-3-small"
_DEFAULT_EMBEDDING_MAX_CHARS: Final[int] = 8000
_DEFAULT_OLLAMA_URL: Final[str] = "http://localhost:11434"
_DEFAULT_OLLAMA_TIMEOUT: Final[float] = 60.0
_DEFAULT_OPENAI_TIMEOUT: Final[float] = 30.0
_DEFAULT_QDRANT_COLLECTION: Final[str] = "entity_embeddings"
_DEFAULT_DATA_DIR: Final[str] = "data"
_DEFAULT_CHUNK_MAX_TOKENS: Final[int] = 1000
_DEFAULT_CHUNK_OVERLAP_TOKENS: Final[int] = 200
_DEFAULT_INGESTION_DOMAIN: Final[str] = "knowledge-base"
_DEFAULT_INGESTION_ENTITY_TYPE: Final[str] = "document_chunk"
_DEFAULT_SEARCH_TOP_K: Final[int] = 5
_DEFAULT_SEARCH_THRESHOLD: Final[float] = 0.5
_DEFAULT_CACHE_TTL_SECONDS: Final[float] = 300.0
_DEFAULT_CACHE_MAX_ENTRIES: Final[int] = 50

_OPENAI_MODEL_DIMENSIONS: Final[dict[str, int]] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_optional_int(name: str) -> int | None:
    """Read an optional integer environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_optional_float(name: str) -> float | None:
    """Read an optional float environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_int(name: str, default: int) -> int:
    value = _env_optional_int(name)
    return default if value is None else value


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    value = _env_optional_float(name)
    return default if value is None else value


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean environment variable with a fallback."""

    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


def _split_remote_model_spec(spec: str) -> tuple[str, str | None]:
    """
    Split an embedding model spec into (model, base_url).

    Accepts either a bare model name or a full URL ending with the model name.
    When a URL is provided, the final path segment is treated as the model name.
    """

    value = spec.strip()
    if not value:
        return "", None

    lowered = value.lower()
    if lowered.startswith("http://") or lowered.startswith("https://"):
        base, sep, model = value.rpartition("/")
        model = model.strip()
        if not sep or not base.strip():
            msg = f"Embedding model spec '{spec}' must include a URL ending with the model name."
            raise ValueError(msg)
        return model, base.strip()

    return value, None


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    embedding_model: str = _DEFAULT_EMBEDDING_MODEL
    embedding_max_chars: int = _DEFAULT_EMBEDDING_MAX_CHARS
    openai_api_key: str | None = None
    openai_request_timeout: float = _DEFAULT_OPENAI_TIMEOUT
    ollama_base_url: str = _DEFAULT_OLLAMA_URL
    ollama_request_timeout: float = _DEFAULT_OLLAMA_TIMEOUT
    qdrant_url: str | None = None
    qdrant_path: str | None = None
    qdrant_api_key: str | None = None
    qdrant_collection: str = _DEFAULT_QDRANT_COLLECTION
    data_dir: str = _DEFAULT_DATA_DIR
    sources_path: str | None = None
    sources_rest_url: str | None = None
    sources_rest_api_key: str | None = None
    chunk_max_tokens: int = _DEFAULT_CHUNK_MAX_TOKENS
    chunk_overlap_tokens: int = _DEFAULT_CHUNK_OVERLAP_TOKENS
    ingestion_domain: str = _DEFAULT_INGESTION_DOMAIN
    ingestion_entity_type: str = _DEFAULT_INGESTION_ENTITY_TYPE
    search_top_k: int = _DEFAULT_SEARCH_TOP_K
    search_threshold: float = _DEFAULT_SEARCH_THRESHOLD
    search_use_precision: bool = False
    cache_ttl_seconds: float = _DEFAULT_CACHE_TTL_SECONDS
    cache_max_entries: int = _DEFAULT_CACHE_MAX_ENTRIES
    observability_metrics_enabled: bool = True
    observability_namespace: str = "knowledge_engine"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        return cls(
            embedding_model=os.getenv("EMBEDDING_MODEL", _DEFAULT_EMBEDDING_MODEL),
            embedding_max_chars=max(1, _env_int("EMBEDDING_MAX_CHARS", _DEFAULT_EMBEDDING_MAX_CHARS)),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_request_timeout=_env_float("OPENAI_TIMEOUT", _DEFAULT_OPENAI_TIMEOUT),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", _DEFAULT_OLLAMA_URL),
            ollama_request_timeout=_env_float("OLLAMA_TIMEOUT", _DEFAULT_OLLAMA_TIMEOUT),
            qdrant_url=os.getenv("QDRANT_URL"),
            qdrant_path=os.getenv("QDRANT_PATH"),
            qdrant_api_key=os.getenv("QDRANT_API_KEY"),
            qdrant_collection=os.getenv("QDRANT_COLLECTION", _DEFAULT_QDRANT_COLLECTION),
            data_dir=os.getenv("DATA_DIR", _DEFAULT_DATA_DIR),
            sources_path=os.getenv("SOURCES_PATH"),
            sources_rest_url=os.getenv("SOURCES_REST_URL"),
            sources_rest_api_key=os.getenv("SOURCES_REST_API_KEY"),
            chunk_max_tokens=max(1, _env_int("CHUNK_MAX_TOKENS", _DEFAULT_CHUNK_MAX_TOKENS)),
            chunk_overlap_tokens=max(0, _env_int("CHUNK_OVERLAP_TOKENS", _DEFAULT_CHUNK_OVERLAP_TOKENS)),
            ingestion_domain=os.getenv("INGESTION_DOMAIN", _DEFAULT_INGESTION_DOMAIN),
            ingestion_entity_type=os.getenv("INGESTION_ENTITY_TYPE", _DEFAULT_INGESTION_ENTITY_TYPE),
            search_top_k=max(1, _env_int("SEARCH_TOP_K", _DEFAULT_SEARCH_TOP_K)),
            search_threshold=_env_float("SEARCH_THRESHOLD", _DEFAULT_SEARCH_THRESHOLD),
            search_use_precision=_env_bool("SEARCH_USE_PRECISION", False),
            cache_ttl_seconds=max(0.0, _env_float("CACHE_TTL_SECONDS", _DEFAULT_CACHE_TTL_SECONDS)),
            cache_max_entries=max(1, _env_int("CACHE_MAX_ENTRIES", _DEFAULT_CACHE_MAX_ENTRIES)),
            observability_metrics_enabled=_env_bool("OBSERVABILITY_METRICS_ENABLED", True),
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "knowledge_engine"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def is_ollama_embedding_backend(self) -> bool:
        """Return True when embeddings should be generated via an Ollama-hosted model."""

        return self.embedding_model.strip().lower().startswith("ollama:")

    @property
    def ollama_embedding_endpoint(self) -> tuple[str, str]:
        """Return the Ollama embedding model and resolved base URL for embeddings."""

        if not self.is_ollama_embedding_backend:
            msg = "Ollama embedding endpoint requested but EMBEDDING_MODEL is not an Ollama model."
            raise ValueError(msg)
        _, _, name = self.embedding_model.partition(":")
        model, base = _split_remote_model_spec(name)
        if not model:
            msg = "EMBEDDING_MODEL must include an Ollama model identifier."
            raise ValueError(msg)
        base_url = (base or self.ollama_base_url or _DEFAULT_OLLAMA_URL).rstrip("/")
        if not base_url:
            msg = "Resolved Ollama embedding base URL is empty."
            raise ValueError(msg)
        return model, base_url

    @property
    def openai_embedding_dimension(self) -> int:
        """Return the vector size produced by the configured OpenAI model."""

        model = self.embedding_model.strip()
        try:
            return _OPENAI_MODEL_DIMENSIONS[model]
        except KeyError as exc:
            supported = ", ".join(sorted(_OPENAI_MODEL_DIMENSIONS))
            raise ValueError(f"Unsupported OpenAI embedding model '{model}' (expected one of: {supported})") from exc

    def qdrant_client_kwargs(self) -> dict[str, Any]:
        """Configuration arguments for instantiating a Qdrant client.

        A remote URL wins over a local path; with neither configured the store
        lives on disk under ``data_dir``.
        """

        if self.qdrant_url:
            kwargs: dict[str, Any] = {"url": self.qdrant_url}
            if self.qdrant_api_key:
                kwargs["api_key"] = self.qdrant_api_key
            return kwargs
        if self.qdrant_path == ":memory:":
            return {"location": ":memory:"}
        path = self.qdrant_path or str(Path(self.data_dir) / "qdrant")
        return {"path": str(Path(path).expanduser().resolve())}

    def sources_registry_path(self) -> Path:
        """Return the JSON file tracking knowledge source status."""

        if self.sources_path:
            return Path(self.sources_path).expanduser().resolve()
        return Path(self.data_dir).resolve() / "sources.json"

    def default_search_options(self) -> "SearchOptions":
        """Return the search options applied when a request omits them."""

        from .vector_store import SearchOptions

        return SearchOptions(
            top_k=self.search_top_k,
            threshold=self.search_threshold,
            use_precision=self.search_use_precision,
        )

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )
