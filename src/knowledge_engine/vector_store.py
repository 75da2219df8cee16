"""Embedding record storage and similarity search backed by Qdrant."""

from __future__ import annotations

import logging
import math
import threading
import uuid
from collections.abc import Iterator
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Protocol, Sequence

from qdrant_client import QdrantClient, models

from .config import Settings
from .errors import InvalidRequest, NotFound, StorageError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
EXACT_MATCH_THRESHOLD = 0.999

RAW_VECTOR = "raw"
COSINE_VECTOR = "cosine"

# Extra candidates fetched beyond top_k so equal scores at the cut survive re-sorting.
_MIN_OVERFETCH = 10
_SCORE_SLACK = 1e-6

_POINT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "knowledge-engine/entity")


@dataclass(frozen=True, slots=True)
class EntityMetadata:
    name: str
    description: str = ""
    entity_type: str = ""
    domain: str = ""


@dataclass(frozen=True, slots=True)
class EmbeddingRecord:
    """One stored embedding; replaced wholesale on re-ingestion, never mutated."""

    entity_id: str
    vector: tuple[float, ...]
    metadata: EntityMetadata
    source_id: str | None = None
    document_id: str | None = None
    chunk_index: int | None = None
    text: str | None = None
    keywords: tuple[str, ...] = ()
    updated_at: str | None = None

    def __post_init__(self) -> None:
        if not self.entity_id:
            raise InvalidRequest("entity_id must be a non-empty string")
        vector = tuple(float(value) for value in self.vector)
        if not vector:
            raise InvalidRequest(f"Vector for entity {self.entity_id!r} is empty")
        object.__setattr__(self, "vector", vector)
        object.__setattr__(self, "keywords", tuple(str(keyword).lower() for keyword in self.keywords))


@dataclass(frozen=True, slots=True)
class SearchOptions:
    """Options for a similarity query; every field has an explicit default."""

    top_k: int = 5
    domain: str | None = None
    entity_type: str | None = None
    threshold: float = 0.5
    use_precision: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.top_k, bool) or not isinstance(self.top_k, int) or self.top_k < 1:
            raise InvalidRequest("topK must be a positive integer")
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, (int, float)):
            raise InvalidRequest("threshold must be a number between 0 and 1")
        if not 0.0 <= float(self.threshold) <= 1.0:
            raise InvalidRequest("threshold must be a number between 0 and 1")
        object.__setattr__(self, "threshold", float(self.threshold))
        object.__setattr__(self, "domain", self.domain or None)
        object.__setattr__(self, "entity_type", self.entity_type or None)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MatchType(str, Enum):
    EXACT = "exact"
    APPROXIMATE = "approximate"
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


@dataclass(frozen=True, slots=True)
class SearchResult:
    entity_id: str
    entity: EntityMetadata
    similarity: float
    match_type: MatchType


@dataclass(slots=True)
class VectorStoreStats:
    count: int
    dimension: int | None
    last_updated: str | None
    storage_type: str


@dataclass(frozen=True, slots=True)
class ScoredCandidate:
    """A point returned by a backend similarity query."""

    entity_id: str
    metadata: EntityMetadata
    score: float
    vector: tuple[float, ...] | None = None


@dataclass(frozen=True, slots=True)
class KeywordDocument:
    """The payload fields keyword scoring reads, without any vectors."""

    entity_id: str
    metadata: EntityMetadata
    keywords: tuple[str, ...]
    text: str


class RecordBackend(Protocol):
    """Durable per-record storage and nearest-neighbour search underneath :class:`VectorStore`."""

    storage_type: str
    vector_size: int

    def prepare(self) -> None: ...

    def write(self, record: EmbeddingRecord) -> None: ...

    def delete(self, entity_ids: Sequence[str]) -> None: ...

    def get(self, entity_id: str) -> EmbeddingRecord | None: ...

    def count(self) -> int: ...

    def ids_for_source(self, source_id: str) -> List[str]: ...

    def query(
        self,
        vector: Sequence[float],
        options: "SearchOptions",
        *,
        limit: int,
        exclude_entity_id: str | None = None,
    ) -> List[ScoredCandidate]: ...

    def iter_documents(self, options: "SearchOptions") -> Iterator[KeywordDocument]: ...

    def iter_records(self) -> Iterator[EmbeddingRecord]: ...

    def close(self) -> None: ...


def point_id_for(entity_id: str) -> str:
    """Return the deterministic Qdrant point id for an entity."""

    return str(uuid.uuid5(_POINT_NAMESPACE, entity_id))


class QdrantRecordStore:
    """Persist one Qdrant point per entity, with a versioned payload.

    Each point carries two named vectors holding the same values: ``raw`` uses
    dot-product distance so Qdrant keeps it exactly as written (float32) for
    reload, and ``cosine`` is normalised by Qdrant and serves every
    similarity query.
    """

    def __init__(
        self,
        client: QdrantClient,
        collection_name: str,
        *,
        vector_size: int,
        storage_type: str = "qdrant",
    ) -> None:
        if vector_size <= 0:
            msg = "vector_size must be a positive integer"
            raise ValueError(msg)
        self._client = client
        self._collection_name = collection_name
        self._vector_size = vector_size
        self.storage_type = storage_type

    @classmethod
    def from_settings(cls, settings: Settings, *, vector_size: int) -> "QdrantRecordStore":
        """Instantiate the store using application settings."""

        kwargs = settings.qdrant_client_kwargs()
        if "url" in kwargs:
            storage_type = "qdrant-remote"
        elif "location" in kwargs:
            storage_type = "qdrant-memory"
        else:
            storage_type = "qdrant-local"
        client = QdrantClient(**kwargs)
        return cls(client, settings.qdrant_collection, vector_size=vector_size, storage_type=storage_type)

    @property
    def collection_name(self) -> str:
        return self._collection_name

    @property
    def vector_size(self) -> int:
        return self._vector_size

    def prepare(self) -> None:
        self.ensure_collection()
        self.ensure_payload_indexes()

    def ensure_collection(self) -> None:
        """Create the collection when missing; refuse to reuse one with another vector layout."""

        try:
            exists = self._client.collection_exists(self._collection_name)
            if not exists:
                self._client.create_collection(
                    collection_name=self._collection_name,
                    vectors_config={
                        RAW_VECTOR: models.VectorParams(size=self._vector_size, distance=models.Distance.DOT),
                        COSINE_VECTOR: models.VectorParams(size=self._vector_size, distance=models.Distance.COSINE),
                    },
                )
                logger.info("store.collection_created name=%s size=%s", self._collection_name, self._vector_size)
                return
            info = self._client.get_collection(self._collection_name)
        except Exception as exc:
            raise StorageError(f"Failed to prepare Qdrant collection '{self._collection_name}': {exc}") from exc

        vectors = info.config.params.vectors
        if not isinstance(vectors, dict) or RAW_VECTOR not in vectors or COSINE_VECTOR not in vectors:
            msg = (
                f"Qdrant collection '{self._collection_name}' does not carry the "
                f"'{RAW_VECTOR}' and '{COSINE_VECTOR}' named vectors."
            )
            raise StorageError(msg)
        for name in (RAW_VECTOR, COSINE_VECTOR):
            existing_size = vectors[name].size
            if existing_size != self._vector_size:
                msg = (
                    f"Qdrant collection '{self._collection_name}' has {name} vector size {existing_size} "
                    f"but {self._vector_size} is expected."
                )
                raise StorageError(msg)

    def ensure_payload_indexes(self) -> None:
        """Ensure the filtered payload fields are indexed."""

        for field_name in ("domain", "entity_type", "source_id"):
            try:
                self._client.create_payload_index(
                    collection_name=self._collection_name,
                    field_name=field_name,
                    field_schema=models.PayloadSchemaType.KEYWORD,
                )
            except Exception as exc:  # pragma: no cover - already exists
                if "exists" in str(exc).lower():
                    continue
                logger.warning(
                    "Failed to create payload index for field '%s' on '%s': %s",
                    field_name,
                    self._collection_name,
                    exc,
                )

    def write(self, record: EmbeddingRecord) -> None:
        if len(record.vector) != self._vector_size:
            msg = (
                f"Vector for entity {record.entity_id!r} has length {len(record.vector)}, "
                f"expected {self._vector_size}."
            )
            raise InvalidRequest(msg)
        vector = list(record.vector)
        point = models.PointStruct(
            id=point_id_for(record.entity_id),
            vector={RAW_VECTOR: vector, COSINE_VECTOR: vector},
            payload=_record_payload(record),
        )
        try:
            self._client.upsert(collection_name=self._collection_name, points=[point], wait=True)
        except Exception as exc:
            raise StorageError(f"Failed to persist embedding for {record.entity_id!r}: {exc}") from exc

    def delete(self, entity_ids: Sequence[str]) -> None:
        if not entity_ids:
            return
        selector = models.PointIdsList(points=[point_id_for(entity_id) for entity_id in entity_ids])
        try:
            self._client.delete(collection_name=self._collection_name, points_selector=selector, wait=True)
        except Exception as exc:
            raise StorageError(f"Failed to delete embeddings: {exc}") from exc

    def get(self, entity_id: str) -> EmbeddingRecord | None:
        try:
            points = self._client.retrieve(
                collection_name=self._collection_name,
                ids=[point_id_for(entity_id)],
                with_payload=True,
                with_vectors=[RAW_VECTOR],
            )
        except Exception as exc:
            raise StorageError(f"Failed to read embedding for {entity_id!r}: {exc}") from exc
        if not points:
            return None
        point = points[0]
        return _record_from_point(point.id, point.payload, point.vector)

    def count(self) -> int:
        """Return the number of stored records."""

        try:
            return self._client.count(self._collection_name, exact=True).count
        except Exception as exc:
            raise StorageError(f"Failed to count embeddings in '{self._collection_name}': {exc}") from exc

    def ids_for_source(self, source_id: str) -> List[str]:
        flt = models.Filter(
            must=[models.FieldCondition(key="source_id", match=models.MatchValue(value=source_id))]
        )
        return [
            str(payload["entity_id"])
            for payload in self.iter_payloads(scroll_filter=flt, payload_fields=["entity_id"])
            if payload.get("entity_id")
        ]

    def query(
        self,
        vector: Sequence[float],
        options: SearchOptions,
        *,
        limit: int,
        exclude_entity_id: str | None = None,
    ) -> List[ScoredCandidate]:
        """Return up to ``limit`` points ranked by cosine score against ``vector``.

        ``options.use_precision`` switches Qdrant to exact (full scan) search
        and returns each point's raw vector for re-scoring.
        """

        query_vector = list(vector)
        if len(query_vector) != self._vector_size:
            msg = f"Query vector has length {len(query_vector)}, expected {self._vector_size}."
            raise InvalidRequest(msg)

        score_threshold = options.threshold - _SCORE_SLACK if options.threshold > 0.0 else None
        try:
            response = self._client.query_points(
                collection_name=self._collection_name,
                query=query_vector,
                using=COSINE_VECTOR,
                query_filter=_options_filter(options, exclude_entity_id=exclude_entity_id),
                limit=limit,
                score_threshold=score_threshold,
                search_params=models.SearchParams(exact=options.use_precision),
                with_payload=True,
                with_vectors=[RAW_VECTOR] if options.use_precision else False,
            )
        except Exception as exc:
            raise StorageError(f"Similarity query on '{self._collection_name}' failed: {exc}") from exc

        candidates: list[ScoredCandidate] = []
        for point in response.points:
            payload = point.payload or {}
            raw = point.vector.get(RAW_VECTOR) if isinstance(point.vector, dict) else None
            candidates.append(
                ScoredCandidate(
                    entity_id=str(payload.get("entity_id", point.id)),
                    metadata=_metadata_from_payload(payload),
                    score=float(point.score),
                    vector=tuple(raw) if raw else None,
                )
            )
        return candidates

    def iter_documents(self, options: SearchOptions) -> Iterator[KeywordDocument]:
        fields = ["entity_id", "name", "description", "entity_type", "domain", "keywords", "text"]
        for payload in self.iter_payloads(scroll_filter=_options_filter(options), payload_fields=fields):
            entity_id = payload.get("entity_id")
            if not entity_id:
                continue
            yield KeywordDocument(
                entity_id=str(entity_id),
                metadata=_metadata_from_payload(payload),
                keywords=tuple(str(keyword).lower() for keyword in payload.get("keywords") or ()),
                text=str(payload.get("text") or ""),
            )

    def iter_payloads(
        self,
        *,
        scroll_filter: models.Filter | None = None,
        payload_fields: Sequence[str] | None = None,
        batch_size: int = 256,
    ) -> Iterator[dict[str, Any]]:
        """Yield payload dictionaries for stored points, optionally filtered."""

        for point in self._scroll(scroll_filter, payload_fields, with_vectors=False, batch_size=batch_size):
            yield dict(point.payload or {})

    def iter_records(self, *, batch_size: int = 256) -> Iterator[EmbeddingRecord]:
        """Yield every stored record, validating each payload against the schema version."""

        for point in self._scroll(None, None, with_vectors=[RAW_VECTOR], batch_size=batch_size):
            yield _record_from_point(point.id, point.payload, point.vector)

    def close(self) -> None:
        self._client.close()

    def _scroll(self, scroll_filter, payload_fields, *, with_vectors, batch_size: int):
        offset = None
        while True:
            try:
                points, offset = self._client.scroll(
                    collection_name=self._collection_name,
                    scroll_filter=scroll_filter,
                    with_payload=list(payload_fields) if payload_fields is not None else True,
                    with_vectors=with_vectors,
                    limit=batch_size,
                    offset=offset,
                )
            except Exception as exc:
                raise StorageError(f"Failed to read embeddings from '{self._collection_name}': {exc}") from exc
            yield from points
            if offset is None:
                break


def _options_filter(options: SearchOptions, *, exclude_entity_id: str | None = None) -> models.Filter | None:
    must: list[models.Condition] = []
    if options.domain is not None:
        must.append(models.FieldCondition(key="domain", match=models.MatchValue(value=options.domain)))
    if options.entity_type is not None:
        must.append(models.FieldCondition(key="entity_type", match=models.MatchValue(value=options.entity_type)))
    must_not: list[models.Condition] = []
    if exclude_entity_id is not None:
        must_not.append(models.HasIdCondition(has_id=[point_id_for(exclude_entity_id)]))
    if not must and not must_not:
        return None
    return models.Filter(must=must or None, must_not=must_not or None)


def _record_payload(record: EmbeddingRecord) -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "entity_id": record.entity_id,
        "name": record.metadata.name,
        "description": record.metadata.description,
        "entity_type": record.metadata.entity_type,
        "domain": record.metadata.domain,
        "source_id": record.source_id,
        "document_id": record.document_id,
        "chunk_index": record.chunk_index,
        "text": record.text,
        "keywords": list(record.keywords),
        "updated_at": record.updated_at,
    }


def _metadata_from_payload(payload: dict[str, Any]) -> EntityMetadata:
    return EntityMetadata(
        name=str(payload.get("name") or ""),
        description=str(payload.get("description") or ""),
        entity_type=str(payload.get("entity_type") or ""),
        domain=str(payload.get("domain") or ""),
    )


def _record_from_point(point_id: Any, payload: dict[str, Any] | None, vector: Any) -> EmbeddingRecord:
    if not isinstance(payload, dict):
        raise StorageError(f"Point {point_id} has no payload")
    version = payload.get("schema_version")
    if version != SCHEMA_VERSION:
        raise StorageError(f"Point {point_id} has schema version {version!r}, expected {SCHEMA_VERSION}")
    entity_id = payload.get("entity_id")
    name = payload.get("name")
    if not isinstance(entity_id, str) or not entity_id or not isinstance(name, str):
        raise StorageError(f"Point {point_id} payload is missing entity_id or name")
    raw = vector.get(RAW_VECTOR) if isinstance(vector, dict) else None
    if not isinstance(raw, (list, tuple)) or not raw:
        raise StorageError(f"Point {point_id} has no stored vector")
    chunk_index = payload.get("chunk_index")
    if chunk_index is not None and not isinstance(chunk_index, int):
        raise StorageError(f"Point {point_id} has a non-integer chunk_index")
    keywords = payload.get("keywords") or []
    if not isinstance(keywords, list):
        raise StorageError(f"Point {point_id} has non-list keywords")
    try:
        return EmbeddingRecord(
            entity_id=entity_id,
            vector=tuple(raw),
            metadata=_metadata_from_payload(payload),
            source_id=payload.get("source_id"),
            document_id=payload.get("document_id"),
            chunk_index=chunk_index,
            text=payload.get("text"),
            keywords=tuple(keywords),
            updated_at=payload.get("updated_at"),
        )
    except (InvalidRequest, TypeError, ValueError) as exc:
        raise StorageError(f"Point {point_id} payload is malformed: {exc}") from exc


def _precise_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    dot = math.fsum(a * b for a, b in zip(left, right))
    left_norm = math.sqrt(math.fsum(a * a for a in left))
    right_norm = math.sqrt(math.fsum(b * b for b in right))
    if left_norm == 0.0 or right_norm == 0.0:
        return 0.0
    return dot / (left_norm * right_norm)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def keyword_score(terms: Sequence[str], document: KeywordDocument) -> float:
    """Score a document against lowercased query terms on a 0..1 scale.

    A term earns 2 when any keyword contains it, 3 when any word of the name
    contains it and 1 when the text contains it.
    """

    if not terms:
        return 0.0
    name_words = document.metadata.name.lower().split()
    text = document.text.lower()
    matches = 0
    for term in terms:
        if any(term in keyword for keyword in document.keywords):
            matches += 2
        if any(term in word for word in name_words):
            matches += 3
        if term in text:
            matches += 1
    return min(matches / (len(terms) * 6), 1.0)


def query_terms(query: str) -> List[str]:
    return [term for term in query.lower().split() if len(term) > 2]


class VectorStore:
    """Shared embedding index persisted in Qdrant.

    Call :meth:`open` (or use the store as a context manager) before any other
    operation. Qdrant holds the only copy of every record; writes and deletes
    are serialised by a writer lock so each replacement lands whole, and
    readers see either the previous record or the new one.
    """

    def __init__(self, backend: RecordBackend, *, dimension: int | None = None) -> None:
        if dimension is not None and dimension != backend.vector_size:
            msg = f"dimension {dimension} does not match backend vector size {backend.vector_size}"
            raise ValueError(msg)
        self._backend = backend
        self._dimension = backend.vector_size
        self._write_lock = threading.RLock()
        self._opened = False
        self._last_updated: str | None = None

    @property
    def dimension(self) -> int | None:
        return self._dimension

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> "VectorStore":
        """Prepare the collection and validate every stored record before serving."""

        with self._write_lock:
            if self._opened:
                return self
            self._backend.prepare()
            count = 0
            last_updated = None
            for record in self._backend.iter_records():
                self._check_dimension(record)
                count += 1
                if record.updated_at and (last_updated is None or record.updated_at > last_updated):
                    last_updated = record.updated_at
            self._last_updated = last_updated
            self._opened = True
        logger.info("store.opened records=%s storage=%s", count, self._backend.storage_type)
        return self

    def close(self) -> None:
        with self._write_lock:
            if not self._opened:
                return
            self._opened = False
            self._backend.close()
        logger.info("store.closed storage=%s", self._backend.storage_type)

    def __enter__(self) -> "VectorStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def upsert(self, record: EmbeddingRecord) -> None:
        """Insert or replace the record for ``record.entity_id``.

        Raises:
            InvalidRequest: when the vector length does not match the store dimension
                or the vector has zero norm.
            StorageError: when the backend write fails; the stored record is left unchanged.
        """

        self._require_open()
        if record.updated_at is None:
            record = replace(record, updated_at=_now())
        self._check_dimension(record)
        if not any(record.vector):
            raise InvalidRequest(f"Vector for entity {record.entity_id!r} has zero norm")
        with self._write_lock:
            self._backend.write(record)
            if self._last_updated is None or record.updated_at > self._last_updated:
                self._last_updated = record.updated_at

    def get(self, entity_id: str) -> EmbeddingRecord:
        self._require_open()
        record = self._backend.get(entity_id)
        if record is None:
            raise NotFound(f"Entity {entity_id!r} has no stored embedding", details={"entity_id": entity_id})
        return record

    def contains(self, entity_id: str) -> bool:
        self._require_open()
        return self._backend.get(entity_id) is not None

    def count(self) -> int:
        self._require_open()
        return self._backend.count()

    def find_similar(self, entity_id: str, options: SearchOptions | None = None) -> List[SearchResult]:
        """Rank stored entities by cosine similarity to ``entity_id``.

        Candidates are filtered by the optional domain and entity type, scored
        in [0, 1], dropped below ``threshold`` and sorted by similarity
        descending with ties broken by ascending entity id. The query entity is
        never part of its own result set.

        Raises:
            NotFound: when ``entity_id`` has no stored embedding.
        """

        options = options or SearchOptions()
        source = self.get(entity_id)
        ranked = self._rank(source.vector, options, exclude_entity_id=entity_id)
        return [
            SearchResult(
                entity_id=candidate_id,
                entity=metadata,
                similarity=similarity,
                match_type=MatchType.EXACT if similarity >= EXACT_MATCH_THRESHOLD else MatchType.APPROXIMATE,
            )
            for similarity, candidate_id, metadata in ranked
        ]

    def search(self, vector: Sequence[float], options: SearchOptions | None = None) -> List[SearchResult]:
        """Rank stored entities by cosine similarity to a query vector."""

        self._require_open()
        options = options or SearchOptions()
        vector = tuple(float(value) for value in vector)
        if len(vector) != self._dimension:
            raise InvalidRequest(f"Query vector has length {len(vector)}, expected {self._dimension}.")
        if not any(vector):
            raise InvalidRequest("Query vector has zero norm")
        return [
            SearchResult(entity_id=candidate_id, entity=metadata, similarity=similarity, match_type=MatchType.SEMANTIC)
            for similarity, candidate_id, metadata in self._rank(vector, options)
        ]

    def keyword_search(self, query: str, options: SearchOptions | None = None) -> List[SearchResult]:
        """Rank stored entities by keyword overlap with ``query``.

        Only terms longer than two characters count. The similarity threshold
        does not apply; any entity with at least one match is a candidate.
        """

        self._require_open()
        options = options or SearchOptions()
        terms = query_terms(query)
        if not terms:
            return []
        scored: list[tuple[float, str, EntityMetadata]] = []
        for document in self._backend.iter_documents(options):
            score = keyword_score(terms, document)
            if score > 0.0:
                scored.append((score, document.entity_id, document.metadata))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [
            SearchResult(entity_id=entity_id, entity=metadata, similarity=score, match_type=MatchType.KEYWORD)
            for score, entity_id, metadata in scored[: options.top_k]
        ]

    def delete(self, entity_id: str) -> None:
        self._require_open()
        with self._write_lock:
            if self._backend.get(entity_id) is None:
                raise NotFound(f"Entity {entity_id!r} has no stored embedding", details={"entity_id": entity_id})
            self._backend.delete([entity_id])

    def delete_source(self, source_id: str) -> int:
        """Remove every record tagged with ``source_id`` and return how many were removed."""

        self._require_open()
        with self._write_lock:
            entity_ids = self._backend.ids_for_source(source_id)
            self._backend.delete(entity_ids)
        if entity_ids:
            logger.info("store.deleted_source source=%s records=%s", source_id, len(entity_ids))
        return len(entity_ids)

    def stats(self) -> VectorStoreStats:
        self._require_open()
        return VectorStoreStats(
            count=self._backend.count(),
            dimension=self._dimension,
            last_updated=self._last_updated,
            storage_type=self._backend.storage_type,
        )

    def _rank(
        self,
        vector: Sequence[float],
        options: SearchOptions,
        *,
        exclude_entity_id: str | None = None,
    ) -> list[tuple[float, str, EntityMetadata]]:
        """Query the backend and return ``(similarity, entity_id, metadata)`` sorted and cut to top_k.

        The fetch limit doubles while the last fetched score still ties the
        top_k boundary, so equal scores are ordered by entity id across the cut.
        """

        limit = options.top_k + max(options.top_k, _MIN_OVERFETCH)
        while True:
            candidates = self._backend.query(vector, options, limit=limit, exclude_entity_id=exclude_entity_id)
            scored: list[tuple[float, str, EntityMetadata]] = []
            for candidate in candidates:
                if options.use_precision and candidate.vector is not None:
                    similarity = _precise_similarity(vector, candidate.vector)
                else:
                    similarity = candidate.score
                similarity = _clamp(similarity)
                if similarity < options.threshold:
                    continue
                scored.append((similarity, candidate.entity_id, candidate.metadata))
            scored.sort(key=lambda item: (-item[0], item[1]))
            if len(candidates) < limit or len(scored) < options.top_k:
                break
            boundary = scored[options.top_k - 1][0]
            if _clamp(candidates[-1].score) < boundary - _SCORE_SLACK:
                break
            limit *= 2
        return scored[: options.top_k]

    def _check_dimension(self, record: EmbeddingRecord) -> None:
        size = len(record.vector)
        if size != self._dimension:
            msg = f"Vector for entity {record.entity_id!r} has length {size}, expected {self._dimension}."
            raise InvalidRequest(msg)

    def _require_open(self) -> None:
        if not self._opened:
            raise RuntimeError("VectorStore is not open; call open() first")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_vector_store(settings: Settings, *, dimension: int) -> VectorStore:
    """Create an unopened store persisting to the Qdrant location in ``settings``."""

    backend = QdrantRecordStore.from_settings(settings, vector_size=dimension)
    return VectorStore(backend, dimension=dimension)


__all__ = [
    "EmbeddingRecord",
    "EntityMetadata",
    "KeywordDocument",
    "MatchType",
    "QdrantRecordStore",
    "RecordBackend",
    "ScoredCandidate",
    "SearchOptions",
    "SearchResult",
    "VectorStore",
    "VectorStoreStats",
    "build_vector_store",
    "keyword_score",
    "point_id_for",
    "query_terms",
]
