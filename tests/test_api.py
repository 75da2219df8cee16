from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from knowledge_engine.app import create_app
from knowledge_engine.cache import KnowledgeSearchCache
from knowledge_engine.config import Settings
from knowledge_engine.errors import RateLimited
from knowledge_engine.observability import MetricsRecorder
from knowledge_engine.sources import JsonSourceRegistry, SourceStatus


@pytest.fixture()
def app_factory(tmp_path: Path, vector_store, fake_embeddings_factory):
    created = {}

    def build(*, embeddings=None, metrics=None, search_cache=None):
        sources = JsonSourceRegistry(tmp_path / "sources.json")
        cache = search_cache if search_cache is not None else KnowledgeSearchCache()
        app = create_app(
            settings=Settings(data_dir=str(tmp_path)),
            embedding_service=embeddings or fake_embeddings_factory(),
            vector_store=vector_store,
            sources=sources,
            search_cache=cache,
            metrics=metrics or MetricsRecorder(enabled=False),
        )
        created.update(sources=sources, cache=cache, store=vector_store)
        return TestClient(app)

    build.created = created
    return build


@pytest.fixture()
def client(app_factory) -> TestClient:
    return app_factory()


@pytest.fixture()
def seeded(vector_store, record_factory):
    vector_store.upsert(record_factory("cap-1", [1.0, 0.0, 0.0], name="Solar Planning"))
    vector_store.upsert(record_factory("cap-2", [1.0, 0.2, 0.0], name="Battery Storage"))
    vector_store.upsert(record_factory("cap-3", [0.0, 1.0, 0.0], name="Payroll"))
    return vector_store


def test_similar_requires_entity_id(client: TestClient) -> None:
    response = client.post("/similar", json={})

    assert response.status_code == 400
    assert response.json() == {"error": "entityId is required", "code": "invalid_request"}


def test_similar_rejects_non_json_body(client: TestClient) -> None:
    response = client.post("/similar", content=b"not json", headers={"content-type": "application/json"})

    assert response.status_code == 400


def test_similar_unknown_entity_returns_404(client: TestClient, seeded) -> None:
    response = client.post("/similar", json={"entityId": "missing-1"})

    assert response.status_code == 404
    assert response.json() == {
        "error": "Entity not found in embeddings. Run embedding script first.",
        "code": "entity_not_indexed",
    }


def test_similar_returns_ranked_results_and_caches(client: TestClient, seeded) -> None:
    first = client.post("/similar", json={"entityId": "cap-1", "topK": 3, "threshold": 0.5})
    second = client.post("/similar", json={"entityId": "cap-1", "topK": 3, "threshold": 0.5})

    assert first.status_code == 200
    body = first.json()
    assert body["query"] == {"entityId": "cap-1", "entityName": "Solar Planning"}
    assert body["meta"] == {"count": 1, "topK": 3, "threshold": 0.5, "cached": False}
    result = body["results"][0]
    assert result["entity"]["id"] == "cap-2"
    assert result["entity"]["name"] == "Battery Storage"
    assert result["entity"]["domain"] == "atlas"
    assert result["entity"]["entityType"] == "capability"
    assert result["similarityPercent"] == 98
    assert result["matchType"] == "approximate"
    assert second.json()["meta"]["cached"] is True
    assert second.json()["results"] == body["results"]


def test_similar_defaults_apply(client: TestClient, seeded) -> None:
    response = client.post("/similar", json={"entityId": "cap-1"})

    assert response.json()["meta"]["topK"] == 5
    assert response.json()["meta"]["threshold"] == 0.5


@pytest.mark.parametrize(
    "payload",
    [
        {"entityId": "cap-1", "topK": 0},
        {"entityId": "cap-1", "topK": "five"},
        {"entityId": "cap-1", "threshold": 2},
        {"entityId": "cap-1", "usePrecision": "yes"},
        {"entityId": "cap-1", "domain": 7},
    ],
)
def test_similar_rejects_invalid_options(client: TestClient, seeded, payload) -> None:
    response = client.post("/similar", json=payload)

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_request"


def test_upload_requires_file_and_source(client: TestClient, pdf_factory) -> None:
    missing_source = client.post("/upload", files={"file": ("doc.pdf", pdf_factory(["Text."]), "application/pdf")})
    missing_file = client.post("/upload", data={"sourceId": "s1"})

    for response in (missing_source, missing_file):
        assert response.status_code == 400
        assert response.json() == {"error": "File and source ID are required", "code": "invalid_request"}


def test_upload_rejects_unsupported_type_without_touching_source(app_factory) -> None:
    client = app_factory()

    response = client.post(
        "/upload",
        files={"file": ("notes.txt", b"plain text", "text/plain")},
        data={"sourceId": "s1"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "unsupported_format"
    assert app_factory.created["sources"].list() == []


def test_upload_processes_pdf(app_factory, pdf_factory) -> None:
    client = app_factory()
    app_factory.created["cache"].put("stale", [])

    response = client.post(
        "/upload",
        files={"file": ("energy.pdf", pdf_factory(["Solar page.", "Battery page."]), "application/pdf")},
        data={"sourceId": "s1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["chunks"] == 2
    assert body["message"] == "File processed successfully"
    assert body["documentId"]
    assert app_factory.created["sources"].get("s1").status is SourceStatus.COMPLETED
    assert app_factory.created["store"].count() == 2
    assert len(app_factory.created["cache"]) == 0


def test_upload_failure_marks_source_failed(app_factory, pdf_factory, fake_embeddings_factory) -> None:
    client = app_factory(embeddings=fake_embeddings_factory(fail_on_call=1, error=RateLimited("slow down")))

    response = client.post(
        "/upload",
        files={"file": ("energy.pdf", pdf_factory(["Solar page."]), "application/pdf")},
        data={"sourceId": "s1"},
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to process file", "code": "rate_limited"}
    source = app_factory.created["sources"].get("s1")
    assert source.status is SourceStatus.FAILED
    assert source.error == "slow down"


def test_cache_stats_report_and_clear(client: TestClient, seeded) -> None:
    client.post("/similar", json={"entityId": "cap-1"})
    client.post("/similar", json={"entityId": "cap-1"})

    stats = client.get("/cache-stats").json()

    assert stats["success"] is True
    assert stats["stats"]["cacheSize"] == 1
    assert stats["stats"]["hits"] == 1
    assert stats["stats"]["misses"] == 1
    entry = stats["stats"]["entries"][0]
    assert entry["query"].startswith('{"entity_id":"cap-1",')
    assert entry["query"].endswith("...")
    assert len(entry["query"]) == 53
    assert entry["ageMinutes"] == 0
    assert entry["resultsCount"] == 1

    cleared = client.delete("/cache-stats")
    assert cleared.json() == {"success": True, "message": "Cache cleared successfully"}
    assert client.get("/cache-stats").json()["stats"]["cacheSize"] == 0


def test_sources_create_and_fetch(client: TestClient) -> None:
    created = client.post("/sources", json={"sourceId": "s1", "name": "Handbook"})

    assert created.status_code == 201
    assert created.json()["status"] == "pending"

    fetched = client.get("/sources/s1").json()
    assert fetched["sourceId"] == "s1"
    assert fetched["name"] == "Handbook"
    assert fetched["status"] == "pending"
    assert fetched["lastUpdated"]
    assert fetched["error"] is None


def test_sources_list(client: TestClient) -> None:
    client.post("/sources", json={"sourceId": "s2", "name": "Second"})
    client.post("/sources", json={"sourceId": "s1", "name": "First"})

    response = client.get("/sources")

    assert response.status_code == 200
    assert [(source["sourceId"], source["name"]) for source in response.json()["sources"]] == [
        ("s1", "First"),
        ("s2", "Second"),
    ]


def test_unknown_source_returns_404(client: TestClient) -> None:
    response = client.get("/sources/nope")

    assert response.status_code == 404
    assert response.json()["code"] == "source_not_found"


def test_stats_and_health(client: TestClient, seeded) -> None:
    stats = client.get("/stats").json()["stats"]
    health = client.get("/health").json()

    assert stats["count"] == 3
    assert stats["dimension"] == 3
    assert stats["storageType"] == "qdrant"
    assert stats["lastUpdated"]
    assert health == {"status": "ok", "embeddings": 3}


def test_metrics_endpoint_disabled_by_default(client: TestClient) -> None:
    assert client.get("/metrics").status_code == 404


def test_metrics_endpoint_exports_prometheus(app_factory, seeded) -> None:
    client = app_factory(metrics=MetricsRecorder(prometheus_enabled=True))
    client.post("/similar", json={"entityId": "cap-1"})

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "knowledge_engine_search_similar_duration" in response.text


def test_upload_rejects_empty_file_without_touching_source(app_factory) -> None:
    client = app_factory()

    response = client.post(
        "/upload",
        files={"file": ("empty.pdf", b"", "application/pdf")},
        data={"sourceId": "s1"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Uploaded file is empty", "code": "invalid_request"}
    assert app_factory.created["sources"].list() == []


def test_search_semantic_mode_embeds_the_query(client: TestClient, seeded) -> None:
    response = client.post("/search", json={"query": "solar panels", "mode": "semantic"})

    assert response.status_code == 200
    body = response.json()
    assert [(r["entity"]["id"], r["matchType"]) for r in body["results"]] == [
        ("cap-1", "semantic"),
        ("cap-2", "semantic"),
    ]
    assert body["meta"] == {"query": "solar panels", "mode": "semantic", "count": 2, "topK": 10, "threshold": 0.5}


def test_search_keyword_mode_scores_name_matches(client: TestClient, seeded) -> None:
    body = client.post("/search", json={"query": "solar planning", "mode": "keyword"}).json()

    assert [(r["entity"]["id"], r["similarityPercent"], r["matchType"]) for r in body["results"]] == [
        ("cap-1", 50, "keyword"),
    ]


def test_search_defaults_to_hybrid_blend(client: TestClient, seeded) -> None:
    body = client.post("/search", json={"query": "solar planning", "topK": 5}).json()

    assert body["meta"]["mode"] == "hybrid"
    assert body["meta"]["topK"] == 5
    results = body["results"]
    assert [(r["entity"]["id"], r["matchType"]) for r in results] == [("cap-1", "hybrid"), ("cap-2", "hybrid")]
    assert results[0]["similarity"] == pytest.approx(0.6 * 1.0 + 0.4 * 0.5, abs=1e-5)
    assert results[1]["similarityPercent"] == 59


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({}, "query string is required"),
        ({"query": 7}, "query string is required"),
        ({"query": " a "}, "query must be at least 2 characters"),
        ({"query": "solar", "mode": "fuzzy"}, "mode must be one of: semantic, keyword, hybrid"),
    ],
)
def test_search_rejects_bad_requests(client: TestClient, payload, message) -> None:
    response = client.post("/search", json=payload)

    assert response.status_code == 400
    assert response.json()["error"] == message


def test_shutdown_closes_source_registry(tmp_path: Path, vector_store, fake_embeddings_factory) -> None:
    class ClosingRegistry(JsonSourceRegistry):
        closed = False

        def close(self) -> None:
            self.closed = True

    sources = ClosingRegistry(tmp_path / "sources.json")
    embeddings = fake_embeddings_factory()
    app = create_app(
        settings=Settings(data_dir=str(tmp_path)),
        embedding_service=embeddings,
        vector_store=vector_store,
        sources=sources,
        metrics=MetricsRecorder(enabled=False),
    )

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200

    assert sources.closed is True
    assert embeddings.closed is True
    assert not vector_store.is_open
