"""Document ingestion: extraction, embedding and storage for one uploaded file."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from fastapi import UploadFile

from .cache import KnowledgeSearchCache
from .chunker import Chunk
from .embeddings import EmbeddingService, extract_keywords
from .errors import InvalidRequest, KnowledgeError, StorageError
from .extraction import TextExtractor, detect_format
from .observability import MetricsRecorder
from .sources import SourceRegistry, SourceStatus
from .vector_store import EmbeddingRecord, EntityMetadata, VectorStore

logger = logging.getLogger(__name__)

_DOCUMENT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "knowledge-engine/document")


@dataclass(slots=True)
class ProcessingResult:
    document_id: str
    source_id: str
    filename: str
    chunk_count: int
    title: str | None = None


def document_id_for(source_id: str, filename: str) -> str:
    """Stable document id, so re-ingesting a file replaces its records."""

    return str(uuid.uuid5(_DOCUMENT_NAMESPACE, f"{source_id}/{filename}"))


class DocumentProcessor:
    """Turn uploaded documents into embedding records tagged with their source.

    A run moves the source to ``processing`` and ends in exactly one of
    ``completed`` or ``failed``. Chunks are embedded and stored one at a time
    in document order. Records written before a failure stay in the store;
    re-processing the same file overwrites them.
    """

    def __init__(
        self,
        extractor: TextExtractor,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        sources: SourceRegistry,
        *,
        domain: str,
        entity_type: str,
        metrics: MetricsRecorder | None = None,
        search_cache: KnowledgeSearchCache | None = None,
    ) -> None:
        self._extractor = extractor
        self._embedding = embedding_service
        self._store = vector_store
        self._sources = sources
        self._domain = domain
        self._entity_type = entity_type
        self._metrics = metrics
        self._cache = search_cache

    async def process_upload(self, upload: UploadFile, source_id: str) -> ProcessingResult:
        filename = upload.filename or "document"
        logger.info("ingest.upload source=%s filename=%s", source_id, filename)
        data = await upload.read()
        return await asyncio.to_thread(
            self.process,
            data,
            source_id,
            filename=filename,
            content_type=upload.content_type,
        )

    def process(
        self,
        data: bytes,
        source_id: str,
        *,
        filename: str,
        content_type: str | None = None,
    ) -> ProcessingResult:
        """Ingest one document for ``source_id``.

        Raises:
            InvalidRequest: when ``source_id`` is blank (nothing is recorded).
            UnsupportedFormat: when the file is not a readable PDF or Word document.
            EmbeddingProviderError / RateLimited: when the embedding provider fails.
            StorageError: when persisting records or status fails.

        Every error after the run starts marks the source ``failed`` before it
        propagates unchanged.
        """

        if not source_id or not source_id.strip():
            raise InvalidRequest("sourceId is required")

        start = time.perf_counter()
        logger.info("ingest.start source=%s filename=%s bytes=%s", source_id, filename, len(data))
        self._sources.update_status(source_id, SourceStatus.PROCESSING)
        try:
            result = self._run(data, source_id, filename=filename, content_type=content_type)
            self._sources.update_status(source_id, SourceStatus.COMPLETED)
        except Exception as exc:
            self._mark_failed(source_id, exc)
            if self._metrics is not None:
                code = exc.code if isinstance(exc, KnowledgeError) else "internal_error"
                self._metrics.increment("ingestion.failures", code=code)
                self._metrics.record_timing("ingestion.duration", time.perf_counter() - start, status="failed")
            raise

        if self._cache is not None:
            self._cache.clear()
        logger.info(
            "ingest.completed source=%s document=%s chunks=%s",
            source_id,
            result.document_id,
            result.chunk_count,
        )
        if self._metrics is not None:
            self._metrics.increment("ingestion.documents")
            self._metrics.increment("ingestion.chunks", value=result.chunk_count)
            self._metrics.record_timing("ingestion.duration", time.perf_counter() - start, status="completed")
        return result

    def _run(
        self,
        data: bytes,
        source_id: str,
        *,
        filename: str,
        content_type: str | None,
    ) -> ProcessingResult:
        if not data:
            raise InvalidRequest("Uploaded file is empty")
        format = detect_format(filename, content_type)
        extracted = self._extractor.extract_document(data, format)
        document_id = document_id_for(source_id, filename)
        title = extracted.title or Path(filename).stem or filename

        for chunk in extracted.chunks:
            vector = self._embedding.embed(chunk.text)
            self._store.upsert(self._build_record(chunk, vector, source_id, document_id, title))
            logger.debug("ingest.chunk source=%s document=%s index=%s", source_id, document_id, chunk.index)

        if not extracted.chunks:
            logger.warning("ingest.empty source=%s filename=%s", source_id, filename)
        return ProcessingResult(
            document_id=document_id,
            source_id=source_id,
            filename=filename,
            chunk_count=len(extracted.chunks),
            title=extracted.title,
        )

    def _build_record(
        self,
        chunk: Chunk,
        vector: list[float],
        source_id: str,
        document_id: str,
        title: str,
    ) -> EmbeddingRecord:
        return EmbeddingRecord(
            entity_id=f"{document_id}:{chunk.index}",
            vector=tuple(vector),
            metadata=EntityMetadata(
                name=f"{title} (part {chunk.index + 1})",
                description=chunk.summary or "",
                entity_type=self._entity_type,
                domain=self._domain,
            ),
            source_id=source_id,
            document_id=document_id,
            chunk_index=chunk.index,
            text=chunk.text,
            keywords=extract_keywords(title),
            updated_at=datetime.now(timezone.utc).isoformat(),
        )

    def _mark_failed(self, source_id: str, exc: Exception) -> None:
        logger.error("ingest.failed source=%s error=%s", source_id, exc)
        try:
            self._sources.update_status(source_id, SourceStatus.FAILED, error=str(exc))
        except StorageError as status_exc:
            logger.error("ingest.status_update_failed source=%s error=%s", source_id, status_exc)


__all__ = ["DocumentProcessor", "ProcessingResult", "document_id_for"]
