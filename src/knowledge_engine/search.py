"""Request-facing similarity queries combining the vector store and the cache."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Protocol

from .cache import KnowledgeSearchCache, build_cache_key
from .errors import EntityNotIndexed, InvalidRequest, NotFound
from .observability import MetricsRecorder
from .vector_store import EntityMetadata, MatchType, SearchOptions, SearchResult, VectorStore

logger = logging.getLogger(__name__)

SEMANTIC_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.4


class QueryEmbedder(Protocol):
    def embed(self, text: str) -> List[float]: ...


class SearchMode(str, Enum):
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"

    @classmethod
    def parse(cls, value: str) -> "SearchMode":
        try:
            return cls(value)
        except ValueError as exc:
            allowed = ", ".join(mode.value for mode in cls)
            raise InvalidRequest(f"mode must be one of: {allowed}") from exc


@dataclass(slots=True)
class SimilarResponse:
    results: List[SearchResult]
    entity_id: str
    entity_name: str
    options: SearchOptions
    cached: bool


@dataclass(slots=True)
class SearchResponse:
    results: List[SearchResult]
    query: str
    mode: SearchMode
    options: SearchOptions


class SimilarityQueryService:
    """Answer "find similar" and free-text queries against the vector store.

    Entity-to-entity queries consult the cache before the store. Free-text
    queries are embedded on every call and never cached.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        cache: KnowledgeSearchCache,
        *,
        embedding_service: QueryEmbedder | None = None,
        metrics: MetricsRecorder | None = None,
        default_options: SearchOptions | None = None,
    ) -> None:
        self._store = vector_store
        self._cache = cache
        self._embedder = embedding_service
        self._metrics = metrics
        self._default_options = default_options or SearchOptions()

    @property
    def default_options(self) -> SearchOptions:
        return self._default_options

    def similar(self, entity_id: str, options: SearchOptions | None = None) -> SimilarResponse:
        """Return entities similar to ``entity_id``.

        A cache miss triggers exactly one store query; only successful results
        are cached.

        Raises:
            EntityNotIndexed: when ``entity_id`` has no stored embedding.
        """

        options = options or self._default_options
        try:
            entity = self._store.get(entity_id)
        except NotFound as exc:
            logger.info("similar.not_indexed entity=%s", entity_id)
            raise EntityNotIndexed(
                "Entity not found in embeddings. Run embedding script first.",
                details={"entity_id": entity_id},
            ) from exc
        entity_name = entity.metadata.name.strip() or entity_id

        key = build_cache_key(entity_id, options)
        cached = self._cache.query(key)
        if cached is not None:
            logger.debug("similar.cache_hit entity=%s results=%s", entity_id, len(cached))
            return SimilarResponse(cached, entity_id, entity_name, options, cached=True)

        try:
            if self._metrics is not None:
                with self._metrics.track_timing("search.similar_duration"):
                    results = self._store.find_similar(entity_id, options)
            else:
                results = self._store.find_similar(entity_id, options)
        except NotFound as exc:
            raise EntityNotIndexed(
                "Entity not found in embeddings. Run embedding script first.",
                details={"entity_id": entity_id},
            ) from exc

        self._cache.put(key, results)
        logger.info("similar.completed entity=%s results=%s top_k=%s", entity_id, len(results), options.top_k)
        return SimilarResponse(results, entity_id, entity_name, options, cached=False)

    def search(
        self,
        text: str,
        mode: SearchMode = SearchMode.HYBRID,
        options: SearchOptions | None = None,
    ) -> SearchResponse:
        """Rank stored entities against free text.

        ``semantic`` embeds the text and ranks by cosine similarity,
        ``keyword`` scores term overlap, and ``hybrid`` blends both with
        weights 0.6 and 0.4 after fetching twice ``top_k`` from each.
        """

        options = options or self._default_options
        mode = SearchMode(mode)
        if self._metrics is not None:
            with self._metrics.track_timing("search.query_duration", mode=mode.value):
                results = self._search(text, mode, options)
        else:
            results = self._search(text, mode, options)
        logger.info("search.completed mode=%s results=%s top_k=%s", mode.value, len(results), options.top_k)
        return SearchResponse(results, text, mode, options)

    def _search(self, text: str, mode: SearchMode, options: SearchOptions) -> List[SearchResult]:
        if mode is SearchMode.SEMANTIC:
            return self._semantic(text, options)
        if mode is SearchMode.KEYWORD:
            return self._store.keyword_search(text, options)

        widened = replace(options, top_k=options.top_k * 2)
        semantic = self._semantic(text, widened)
        keyword = self._store.keyword_search(text, widened)
        scores: dict[str, float] = {}
        entities: dict[str, EntityMetadata] = {}
        for weight, results in ((SEMANTIC_WEIGHT, semantic), (KEYWORD_WEIGHT, keyword)):
            for result in results:
                scores[result.entity_id] = scores.get(result.entity_id, 0.0) + result.similarity * weight
                entities.setdefault(result.entity_id, result.entity)
        merged = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        return [
            SearchResult(entity_id=entity_id, entity=entities[entity_id], similarity=score, match_type=MatchType.HYBRID)
            for entity_id, score in merged[: options.top_k]
        ]

    def _semantic(self, text: str, options: SearchOptions) -> List[SearchResult]:
        if self._embedder is None:
            raise RuntimeError("Semantic search requires an embedding service")
        vector = self._embedder.embed(text)
        return self._store.search(vector, options)


__all__ = ["SearchMode", "SearchResponse", "SimilarResponse", "SimilarityQueryService"]
