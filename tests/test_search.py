from __future__ import annotations

import pytest

from knowledge_engine.cache import KnowledgeSearchCache
from knowledge_engine.errors import EntityNotIndexed
from knowledge_engine.search import SearchMode, SimilarityQueryService
from knowledge_engine.vector_store import MatchType, SearchOptions


class CountingStore:
    """Wrap a vector store and count similarity scans."""

    def __init__(self, store, *, fail_times: int = 0) -> None:
        self._store = store
        self.scans = 0
        self._fail_times = fail_times

    def get(self, entity_id):
        return self._store.get(entity_id)

    def find_similar(self, entity_id, options=None):
        self.scans += 1
        if self._fail_times:
            self._fail_times -= 1
            raise RuntimeError("transient failure")
        return self._store.find_similar(entity_id, options)


@pytest.fixture
def seeded_store(vector_store, record_factory):
    vector_store.upsert(record_factory("query", [1.0, 0.0, 0.0], name="Query entity"))
    vector_store.upsert(record_factory("match", [1.0, 0.5, 0.0], name="Match"))
    vector_store.upsert(record_factory("unnamed", [0.0, 0.0, 1.0], name="  "))
    return vector_store


def test_second_identical_query_is_served_from_cache(seeded_store):
    store = CountingStore(seeded_store)
    service = SimilarityQueryService(store, KnowledgeSearchCache())

    first = service.similar("query")
    second = service.similar("query")

    assert store.scans == 1
    assert first.cached is False
    assert second.cached is True
    assert [r.entity_id for r in second.results] == [r.entity_id for r in first.results] == ["match"]
    assert second.entity_name == "Query entity"


def test_clear_forces_fresh_scan(seeded_store):
    store = CountingStore(seeded_store)
    cache = KnowledgeSearchCache()
    service = SimilarityQueryService(store, cache)

    service.similar("query")
    cache.clear()
    service.similar("query")

    assert store.scans == 2


def test_distinct_options_do_not_share_entries(seeded_store):
    store = CountingStore(seeded_store)
    service = SimilarityQueryService(store, KnowledgeSearchCache())

    service.similar("query", SearchOptions(threshold=0.5))
    service.similar("query", SearchOptions(threshold=0.9))

    assert store.scans == 2


def test_unknown_entity_raises_entity_not_indexed_and_is_not_cached(seeded_store):
    cache = KnowledgeSearchCache()
    service = SimilarityQueryService(CountingStore(seeded_store), cache)

    with pytest.raises(EntityNotIndexed) as excinfo:
        service.similar("missing-1")

    assert excinfo.value.message == "Entity not found in embeddings. Run embedding script first."
    assert excinfo.value.status_code == 404
    assert cache.stats().size == 0


def test_errors_are_never_cached(seeded_store):
    store = CountingStore(seeded_store, fail_times=1)
    cache = KnowledgeSearchCache()
    service = SimilarityQueryService(store, cache)

    with pytest.raises(RuntimeError):
        service.similar("query")
    assert cache.stats().size == 0

    response = service.similar("query")
    assert response.cached is False
    assert store.scans == 2


def test_blank_entity_name_defaults_to_id(seeded_store):
    service = SimilarityQueryService(seeded_store, KnowledgeSearchCache())

    response = service.similar("unnamed", SearchOptions(threshold=0.0))

    assert response.entity_name == "unnamed"
    assert response.options.threshold == 0.0


def test_default_options_apply_when_omitted(seeded_store):
    defaults = SearchOptions(top_k=1, threshold=0.0)
    service = SimilarityQueryService(seeded_store, KnowledgeSearchCache(), default_options=defaults)

    response = service.similar("query")

    assert response.options is defaults
    assert len(response.results) == 1


def test_semantic_search_embeds_query_once(seeded_store, fake_embeddings_factory):
    embeddings = fake_embeddings_factory({"sideways": [0.0, 0.0, 1.0]})
    service = SimilarityQueryService(seeded_store, KnowledgeSearchCache(), embedding_service=embeddings)

    response = service.search("sideways things", SearchMode.SEMANTIC, SearchOptions(threshold=0.9))

    assert embeddings.calls == ["sideways things"]
    assert [(r.entity_id, r.match_type) for r in response.results] == [("unnamed", MatchType.SEMANTIC)]
    assert response.mode is SearchMode.SEMANTIC


def test_keyword_search_needs_no_embedder(seeded_store):
    service = SimilarityQueryService(seeded_store, KnowledgeSearchCache())

    response = service.search("query entity", SearchMode.KEYWORD)

    assert [r.entity_id for r in response.results] == ["query"]
    with pytest.raises(RuntimeError):
        service.search("query entity", SearchMode.SEMANTIC)


def test_hybrid_search_blends_and_keeps_top_k(seeded_store, fake_embeddings_factory):
    service = SimilarityQueryService(
        seeded_store, KnowledgeSearchCache(), embedding_service=fake_embeddings_factory()
    )

    response = service.search("match", SearchMode.HYBRID, SearchOptions(top_k=1))

    (result,) = response.results
    assert result.entity_id == "match"
    assert result.match_type is MatchType.HYBRID
    assert result.similarity == pytest.approx(0.6 * 0.894427 + 0.4 * 0.5, abs=1e-5)


def test_search_is_not_cached(seeded_store, fake_embeddings_factory):
    cache = KnowledgeSearchCache()
    embeddings = fake_embeddings_factory()
    service = SimilarityQueryService(seeded_store, cache, embedding_service=embeddings)

    service.search("query entity")
    service.search("query entity")

    assert len(embeddings.calls) == 2
    assert cache.stats().size == 0
