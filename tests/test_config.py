from __future__ import annotations

from pathlib import Path

import pytest

from knowledge_engine.config import Settings


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EMBEDDING_MODEL", "text-embedding-3-large")
    monkeypatch.setenv("OPENAI_API_KEY", "token")
    monkeypatch.setenv("SEARCH_TOP_K", "8")
    monkeypatch.setenv("SEARCH_THRESHOLD", "0.0")
    monkeypatch.setenv("SEARCH_USE_PRECISION", "yes")
    monkeypatch.setenv("CACHE_TTL_SECONDS", "60")
    monkeypatch.setenv("CACHE_MAX_ENTRIES", "0")
    monkeypatch.setenv("CHUNK_MAX_TOKENS", "400")

    settings = Settings.from_env()

    assert settings.embedding_model == "text-embedding-3-large"
    assert settings.openai_embedding_dimension == 3072
    assert settings.search_threshold == 0.0
    assert settings.cache_ttl_seconds == 60.0
    assert settings.cache_max_entries == 1
    assert settings.chunk_max_tokens == 400
    options = settings.default_search_options()
    assert options.top_k == 8
    assert options.use_precision is True


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SEARCH_USE_PRECISION", "maybe")

    with pytest.raises(ValueError):
        Settings.from_env()


def test_invalid_integer_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SEARCH_TOP_K", "many")

    with pytest.raises(ValueError):
        Settings.from_env()


def test_qdrant_client_kwargs_variants(tmp_path: Path) -> None:
    remote = Settings(qdrant_url="http://qdrant:6333", qdrant_api_key="secret")
    memory = Settings(qdrant_path=":memory:")
    local = Settings(data_dir=str(tmp_path))

    assert remote.qdrant_client_kwargs() == {"url": "http://qdrant:6333", "api_key": "secret"}
    assert memory.qdrant_client_kwargs() == {"location": ":memory:"}
    assert local.qdrant_client_kwargs() == {"path": str((tmp_path / "qdrant").resolve())}


def test_sources_registry_path_defaults_under_data_dir(tmp_path: Path) -> None:
    assert Settings(data_dir=str(tmp_path)).sources_registry_path() == tmp_path.resolve() / "sources.json"
    explicit = tmp_path / "elsewhere.json"
    assert Settings(sources_path=str(explicit)).sources_registry_path() == explicit.resolve()


def test_ollama_endpoint_resolution() -> None:
    bare = Settings(embedding_model="ollama:nomic-embed-text", ollama_base_url="http://gpu-box:11434/")
    inline = Settings(embedding_model="ollama:https://models.internal/v1/qwen3-embedding")

    assert bare.is_ollama_embedding_backend
    assert bare.ollama_embedding_endpoint == ("nomic-embed-text", "http://gpu-box:11434")
    assert inline.ollama_embedding_endpoint == ("qwen3-embedding", "https://models.internal/v1")


def test_ollama_endpoint_requires_ollama_model() -> None:
    with pytest.raises(ValueError):
        Settings().ollama_embedding_endpoint
    with pytest.raises(ValueError):
        Settings(embedding_model="ollama:").ollama_embedding_endpoint


def test_unknown_openai_model_has_no_dimension() -> None:
    with pytest.raises(ValueError):
        Settings(embedding_model="mystery").openai_embedding_dimension


def test_metrics_recorder_follows_settings() -> None:
    recorder = Settings(observability_metrics_enabled=False, observability_prometheus_enabled=True).build_metrics_recorder()

    assert recorder.enabled is False
    assert recorder.prometheus_enabled is True
