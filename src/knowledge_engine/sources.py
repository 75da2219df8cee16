"""Knowledge source status tracking."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, List, Protocol

import httpx

from .errors import SourceNotFound, StorageError

logger = logging.getLogger(__name__)


class SourceStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class KnowledgeSource:
    """Lifecycle state of an uploaded knowledge source."""

    source_id: str
    status: SourceStatus
    last_updated: str | None = None
    name: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class SourceRegistry(Protocol):
    """Narrow contract the document processor uses to report source status."""

    def get(self, source_id: str) -> KnowledgeSource: ...

    def list(self) -> List[KnowledgeSource]: ...

    def update_status(
        self,
        source_id: str,
        status: SourceStatus,
        *,
        error: str | None = None,
    ) -> KnowledgeSource: ...


class JsonSourceRegistry:
    """File-backed registry of knowledge sources, safe to share between threads."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def create(self, source_id: str, name: str | None = None) -> KnowledgeSource:
        source = KnowledgeSource(
            source_id=source_id,
            status=SourceStatus.PENDING,
            last_updated=_now(),
            name=name,
        )
        with self._lock:
            data = self._read()
            data[source_id] = source.to_dict()
            self._write(data)
        logger.info("source.created id=%s name=%s", source_id, name)
        return source

    def get(self, source_id: str) -> KnowledgeSource:
        with self._lock:
            item = self._read().get(source_id)
        if item is None:
            raise SourceNotFound(f"Knowledge source {source_id!r} does not exist")
        return _deserialize(item)

    def list(self) -> List[KnowledgeSource]:
        with self._lock:
            items = list(self._read().values())
        return sorted((_deserialize(item) for item in items), key=lambda source: source.source_id)

    def update_status(
        self,
        source_id: str,
        status: SourceStatus,
        *,
        error: str | None = None,
    ) -> KnowledgeSource:
        """Set the status of ``source_id``; unknown sources are registered on the fly."""

        with self._lock:
            data = self._read()
            item = data.get(source_id)
            source = _deserialize(item) if item is not None else KnowledgeSource(source_id, SourceStatus.PENDING)
            source.status = SourceStatus(status)
            source.last_updated = _now()
            source.error = error if source.status is SourceStatus.FAILED else None
            data[source_id] = source.to_dict()
            self._write(data)
        logger.info("source.status id=%s status=%s", source_id, source.status.value)
        return source

    def _read(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError) as exc:
            raise StorageError(f"Failed to read knowledge sources from {self._path}: {exc}") from exc
        sources = payload.get("sources", {}) if isinstance(payload, dict) else None
        if not isinstance(sources, dict):
            raise StorageError(f"Knowledge source file {self._path} is malformed")
        return sources

    def _write(self, sources: dict[str, dict[str, Any]]) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump({"sources": sources}, handle, indent=2)
            tmp_path.replace(self._path)
        except OSError as exc:
            raise StorageError(f"Failed to write knowledge sources to {self._path}: {exc}") from exc


class RestSourceRegistry:
    """Registry backed by a PostgREST-style ``knowledge_sources`` table."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        table: str = "knowledge_sources",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json", "Prefer": "return=representation"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._table = table
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, headers=headers)

    def get(self, source_id: str) -> KnowledgeSource:
        rows = self._request("GET", params={"id": f"eq.{source_id}", "select": "*"})
        if not rows:
            raise SourceNotFound(f"Knowledge source {source_id!r} does not exist")
        return _deserialize_row(rows[0])

    def list(self) -> List[KnowledgeSource]:
        rows = self._request("GET", params={"select": "*", "order": "id.asc"})
        return [_deserialize_row(row) for row in rows]

    def update_status(
        self,
        source_id: str,
        status: SourceStatus,
        *,
        error: str | None = None,
    ) -> KnowledgeSource:
        status = SourceStatus(status)
        body: dict[str, Any] = {"status": status.value}
        if status is SourceStatus.COMPLETED:
            body["last_updated"] = _now()
        rows = self._request("PATCH", params={"id": f"eq.{source_id}"}, json=body)
        logger.info("source.status id=%s status=%s", source_id, status.value)
        if rows:
            source = _deserialize_row(rows[0])
        else:
            source = KnowledgeSource(source_id=source_id, status=status, last_updated=body.get("last_updated"))
        source.error = error if status is SourceStatus.FAILED else None
        return source

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, **kwargs: Any) -> list[dict[str, Any]]:
        try:
            response = self._client.request(method, f"/{self._table}", **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise StorageError(f"Knowledge source request failed: {exc}") from exc
        if not response.content:
            return []
        try:
            rows = response.json()
        except ValueError as exc:
            raise StorageError("Knowledge source response was not valid JSON") from exc
        return rows if isinstance(rows, list) else []


def _deserialize(item: dict[str, Any]) -> KnowledgeSource:
    try:
        return KnowledgeSource(
            source_id=item["source_id"],
            status=SourceStatus(item["status"]),
            last_updated=item.get("last_updated"),
            name=item.get("name"),
            error=item.get("error"),
        )
    except (KeyError, ValueError) as exc:
        raise StorageError(f"Malformed knowledge source entry: {item!r}") from exc


def _deserialize_row(row: dict[str, Any]) -> KnowledgeSource:
    return _deserialize(
        {
            "source_id": str(row.get("id", "")),
            "status": row.get("status", SourceStatus.PENDING.value),
            "last_updated": row.get("last_updated"),
            "name": row.get("name"),
        }
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


__all__ = [
    "JsonSourceRegistry",
    "KnowledgeSource",
    "RestSourceRegistry",
    "SourceRegistry",
    "SourceStatus",
]
