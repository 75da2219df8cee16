"""FastAPI application exposing ingestion and similarity search."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import replace
from typing import Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from .cache import KnowledgeSearchCache
from .config import Settings
from .embeddings import EmbeddingService
from .errors import InvalidRequest, KnowledgeError
from .extraction import TextExtractor, detect_format
from .observability import MetricsRecorder
from .processing import DocumentProcessor
from .search import SearchMode, SearchResponse, SimilarityQueryService, SimilarResponse
from .sources import JsonSourceRegistry, RestSourceRegistry, SourceRegistry
from .vector_store import SearchOptions, SearchResult, VectorStore, build_vector_store

logger = logging.getLogger(__name__)

_CACHE_QUERY_PREVIEW_CHARS = 50
_SEARCH_DEFAULT_TOP_K = 10
_SEARCH_MIN_QUERY_CHARS = 2

_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    engine_logger = logging.getLogger("knowledge_engine")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        engine_logger.handlers = []
        for handler in handlers:
            engine_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        engine_logger.addHandler(handler)

    if engine_logger.level == logging.NOTSET or engine_logger.level > logging.INFO:
        engine_logger.setLevel(logging.INFO)
    engine_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        sources: SourceRegistry,
        search_cache: KnowledgeSearchCache,
        search_service: SimilarityQueryService,
        processor: DocumentProcessor,
        metrics: MetricsRecorder | None,
    ) -> None:
        self.settings = settings
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.sources = sources
        self.search_cache = search_cache
        self.search_service = search_service
        self.processor = processor
        self.metrics = metrics


def build_source_registry(settings: Settings) -> SourceRegistry:
    if settings.sources_rest_url:
        return RestSourceRegistry(settings.sources_rest_url, settings.sources_rest_api_key)
    return JsonSourceRegistry(settings.sources_registry_path())


def create_app(
    *,
    settings: Settings | None = None,
    embedding_service: EmbeddingService | None = None,
    vector_store: VectorStore | None = None,
    sources: SourceRegistry | None = None,
    search_cache: KnowledgeSearchCache | None = None,
    metrics: MetricsRecorder | None = None,
    extractor: TextExtractor | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    _ensure_logging()

    settings = settings or Settings.from_env()
    embedding_service = embedding_service or EmbeddingService(settings)
    metrics = metrics or settings.build_metrics_recorder()
    vector_store = vector_store or build_vector_store(settings, dimension=embedding_service.dimension)
    if not vector_store.is_open:
        vector_store.open()
    sources = sources or build_source_registry(settings)
    if search_cache is None:
        search_cache = KnowledgeSearchCache(
            settings.cache_ttl_seconds,
            settings.cache_max_entries,
            metrics=metrics,
        )
    extractor = extractor or TextExtractor(
        max_tokens=settings.chunk_max_tokens,
        overlap_tokens=settings.chunk_overlap_tokens,
    )
    search_service = SimilarityQueryService(
        vector_store,
        search_cache,
        embedding_service=embedding_service,
        metrics=metrics,
        default_options=settings.default_search_options(),
    )
    processor = DocumentProcessor(
        extractor,
        embedding_service,
        vector_store,
        sources,
        domain=settings.ingestion_domain,
        entity_type=settings.ingestion_entity_type,
        metrics=metrics,
        search_cache=search_cache,
    )
    logger.info(
        "app.start embedding_model=%s records=%s collection=%s",
        settings.embedding_model,
        vector_store.count(),
        settings.qdrant_collection,
    )

    app = FastAPI(title="knowledge-engine")
    app.state.services = ApplicationState(
        settings=settings,
        embedding_service=embedding_service,
        vector_store=vector_store,
        sources=sources,
        search_cache=search_cache,
        search_service=search_service,
        processor=processor,
        metrics=metrics,
    )

    @app.on_event("shutdown")
    async def _shutdown_services() -> None:
        vector_store.close()
        embedding_service.close()
        close_sources = getattr(sources, "close", None)
        if close_sources is not None:
            close_sources()

    @app.exception_handler(KnowledgeError)
    async def _knowledge_error_handler(request: Request, exc: KnowledgeError) -> JSONResponse:
        return _error_response(exc)

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_search_service(request: Request) -> SimilarityQueryService:
        return get_state(request).search_service

    def get_search_cache(request: Request) -> KnowledgeSearchCache:
        return get_state(request).search_cache

    def get_processor(request: Request) -> DocumentProcessor:
        return get_state(request).processor

    def get_sources(request: Request) -> SourceRegistry:
        return get_state(request).sources

    def get_vector_store(request: Request) -> VectorStore:
        return get_state(request).vector_store

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    @app.post("/similar", response_class=JSONResponse)
    async def find_similar(
        request: Request,
        search: SimilarityQueryService = Depends(get_search_service),
    ) -> JSONResponse:
        payload = await _read_json_object(request)
        entity_id = payload.get("entityId")
        if not isinstance(entity_id, str) or not entity_id.strip():
            raise InvalidRequest("entityId is required")
        options = _parse_search_options(payload, search.default_options)

        try:
            response = await asyncio.to_thread(search.similar, entity_id.strip(), options)
        except KnowledgeError:
            raise
        except Exception as exc:
            logger.exception("similar.failed entity=%s error=%s", entity_id, exc)
            return JSONResponse({"error": "Internal server error", "code": "internal_error"}, status_code=500)
        return JSONResponse(_similar_to_dict(response))

    @app.post("/search", response_class=JSONResponse)
    async def search_text(
        request: Request,
        search: SimilarityQueryService = Depends(get_search_service),
    ) -> JSONResponse:
        payload = await _read_json_object(request)
        query = payload.get("query")
        if not isinstance(query, str) or not query:
            raise InvalidRequest("query string is required")
        if len(query.strip()) < _SEARCH_MIN_QUERY_CHARS:
            raise InvalidRequest(f"query must be at least {_SEARCH_MIN_QUERY_CHARS} characters")
        mode = payload.get("mode", SearchMode.HYBRID.value)
        if not isinstance(mode, str):
            raise InvalidRequest("mode must be a string")
        mode = SearchMode.parse(mode)
        options = _parse_search_options(payload, replace(search.default_options, top_k=_SEARCH_DEFAULT_TOP_K))

        try:
            response = await asyncio.to_thread(search.search, query, mode, options)
        except KnowledgeError:
            raise
        except Exception as exc:
            logger.exception("search.failed mode=%s error=%s", mode.value, exc)
            return JSONResponse({"error": "Internal server error", "code": "internal_error"}, status_code=500)
        return JSONResponse(_search_to_dict(response))

    @app.post("/upload", response_class=JSONResponse)
    async def upload_document(
        file: UploadFile | None = File(None),
        source_id: str | None = Form(None, alias="sourceId"),
        processor: DocumentProcessor = Depends(get_processor),
    ) -> JSONResponse:
        if file is None or not file.filename or not source_id or not source_id.strip():
            raise InvalidRequest("File and source ID are required")
        detect_format(file.filename, file.content_type)
        if not await file.read():
            raise InvalidRequest("Uploaded file is empty")
        await file.seek(0)

        try:
            result = await processor.process_upload(file, source_id.strip())
        except Exception as exc:
            code = exc.code if isinstance(exc, KnowledgeError) else "internal_error"
            logger.warning("upload.failed source=%s file=%s error=%s", source_id, file.filename, exc)
            return JSONResponse({"error": "Failed to process file", "code": code}, status_code=500)
        return JSONResponse(
            {
                "success": True,
                "documentId": result.document_id,
                "chunks": result.chunk_count,
                "message": "File processed successfully",
            }
        )

    @app.get("/cache-stats", response_class=JSONResponse)
    async def cache_stats(cache: KnowledgeSearchCache = Depends(get_search_cache)) -> JSONResponse:
        stats = cache.stats()
        return JSONResponse(
            {
                "success": True,
                "stats": {
                    "cacheSize": stats.size,
                    "hits": stats.hits,
                    "misses": stats.misses,
                    "entries": [
                        {
                            "query": _preview(entry.query),
                            "ageMinutes": _round_half_up(entry.age_seconds / 60.0),
                            "resultsCount": entry.results_count,
                        }
                        for entry in stats.entries
                    ],
                },
            }
        )

    @app.delete("/cache-stats", response_class=JSONResponse)
    async def clear_cache(cache: KnowledgeSearchCache = Depends(get_search_cache)) -> JSONResponse:
        cache.clear()
        return JSONResponse({"success": True, "message": "Cache cleared successfully"})

    @app.post("/sources", response_class=JSONResponse)
    async def create_source(
        request: Request,
        sources: SourceRegistry = Depends(get_sources),
    ) -> JSONResponse:
        payload = await _read_json_object(request)
        source_id = payload.get("sourceId")
        if not isinstance(source_id, str) or not source_id.strip():
            raise InvalidRequest("sourceId is required")
        if not isinstance(sources, JsonSourceRegistry):
            return JSONResponse(
                {"error": "Sources are managed by the external metadata store", "code": "not_supported"},
                status_code=501,
            )
        name = payload.get("name")
        source = sources.create(source_id.strip(), name if isinstance(name, str) else None)
        return JSONResponse(_source_to_dict(source), status_code=201)

    @app.get("/sources", response_class=JSONResponse)
    async def list_sources(sources: SourceRegistry = Depends(get_sources)) -> JSONResponse:
        listed = await asyncio.to_thread(sources.list)
        return JSONResponse({"sources": [_source_to_dict(source) for source in listed]})

    @app.get("/sources/{source_id}", response_class=JSONResponse)
    async def get_source(source_id: str, sources: SourceRegistry = Depends(get_sources)) -> JSONResponse:
        return JSONResponse(_source_to_dict(sources.get(source_id)))

    @app.get("/stats", response_class=JSONResponse)
    async def store_stats(store: VectorStore = Depends(get_vector_store)) -> JSONResponse:
        stats = store.stats()
        return JSONResponse(
            {
                "success": True,
                "stats": {
                    "count": stats.count,
                    "dimension": stats.dimension,
                    "lastUpdated": stats.last_updated,
                    "storageType": stats.storage_type,
                },
            }
        )

    @app.get("/health", response_class=JSONResponse)
    async def health(store: VectorStore = Depends(get_vector_store)) -> JSONResponse:
        return JSONResponse({"status": "ok", "embeddings": store.count()})

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics is None or not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        return Response(content=metrics.render_prometheus(), media_type=metrics.prometheus_content_type)

    return app


def _error_response(exc: KnowledgeError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise InvalidRequest("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return payload


def _parse_search_options(payload: dict[str, Any], defaults: SearchOptions) -> SearchOptions:
    top_k = payload.get("topK", defaults.top_k)
    threshold = payload.get("threshold", defaults.threshold)
    use_precision = payload.get("usePrecision", defaults.use_precision)
    domain = payload.get("domain")
    entity_type = payload.get("entityType")
    if isinstance(top_k, float) and top_k.is_integer():
        top_k = int(top_k)
    if not isinstance(use_precision, bool):
        raise InvalidRequest("usePrecision must be a boolean")
    for name, value in (("domain", domain), ("entityType", entity_type)):
        if value is not None and not isinstance(value, str):
            raise InvalidRequest(f"{name} must be a string")
    return SearchOptions(
        top_k=top_k,
        domain=domain,
        entity_type=entity_type,
        threshold=threshold,
        use_precision=use_precision,
    )


def _result_to_dict(result: SearchResult) -> dict[str, Any]:
    return {
        "entity": {
            "id": result.entity_id,
            "name": result.entity.name,
            "description": result.entity.description,
            "entityType": result.entity.entity_type,
            "domain": result.entity.domain,
        },
        "similarity": result.similarity,
        "similarityPercent": _round_half_up(result.similarity * 100.0),
        "matchType": result.match_type.value,
    }


def _similar_to_dict(response: SimilarResponse) -> dict[str, Any]:
    return {
        "results": [_result_to_dict(result) for result in response.results],
        "query": {"entityId": response.entity_id, "entityName": response.entity_name},
        "meta": {
            "count": len(response.results),
            "topK": response.options.top_k,
            "threshold": response.options.threshold,
            "cached": response.cached,
        },
    }


def _search_to_dict(response: SearchResponse) -> dict[str, Any]:
    return {
        "results": [_result_to_dict(result) for result in response.results],
        "meta": {
            "query": response.query,
            "mode": response.mode.value,
            "count": len(response.results),
            "topK": response.options.top_k,
            "threshold": response.options.threshold,
        },
    }


def _source_to_dict(source) -> dict[str, Any]:
    return {
        "sourceId": source.source_id,
        "name": source.name,
        "status": source.status.value,
        "lastUpdated": source.last_updated,
        "error": source.error,
    }


def _preview(query: str) -> str:
    if len(query) <= _CACHE_QUERY_PREVIEW_CHARS:
        return query
    return query[:_CACHE_QUERY_PREVIEW_CHARS] + "..."


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


__all__ = ["ApplicationState", "build_source_registry", "create_app"]
