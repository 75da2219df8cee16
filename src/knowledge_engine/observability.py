"""Metrics instrumentation emitted to logs and, optionally, Prometheus."""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Iterator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")

_PROM_KINDS: dict[str, tuple[type, str]] = {
    "counter": (Counter, "counter"),
    "gauge": (Gauge, "gauge"),
    "histogram": (Histogram, "duration"),
}


class MetricsRecorder:
    """Emit structured metrics via logging and (optionally) Prometheus.

    Every metric is written as a single log line on the
    ``knowledge_engine.metrics`` logger, e.g.
    ``knowledge_engine.ingestion.chunks value=3 source_id=s1``. When Prometheus
    export is enabled the same observation also lands in a private registry
    that ``render_prometheus`` serialises for the ``/metrics`` endpoint.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "knowledge_engine",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "knowledge_engine"
        self._logger = logger or logging.getLogger("knowledge_engine.metrics")
        self._prometheus_enabled = prometheus_enabled
        self._registry = registry if registry is not None else (CollectorRegistry() if prometheus_enabled else None)
        self._prom_metrics: dict[tuple[str, str, tuple[str, ...]], Any] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prometheus_enabled and self._registry is not None

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._registry)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        """Increment a counter metric."""

        if not self._enabled:
            return
        value = int(value)
        clean_tags = _clean(tags)
        self._emit(metric, {"value": value}, clean_tags)
        self._observe("counter", metric, clean_tags, lambda counter: counter.inc(float(max(value, 0))))

    def set_gauge(self, metric: str, value: float, **tags: Any) -> None:
        if not self._enabled:
            return
        clean_tags = _clean(tags)
        self._emit(metric, {"value": value}, clean_tags)
        self._observe("gauge", metric, clean_tags, lambda gauge: gauge.set(float(value)))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Emit a timing metric, recording milliseconds to logs and seconds to Prometheus."""

        if not self._enabled:
            return
        seconds = max(duration_seconds, 0.0)
        clean_tags = _clean(tags)
        self._emit(metric, {"duration_ms": round(seconds * 1000.0, 4)}, clean_tags)
        self._observe("histogram", metric, clean_tags, lambda histogram: histogram.observe(seconds))

    @contextmanager
    def track_timing(self, metric: str, **tags: Any) -> Iterator[None]:
        """Record the execution time of the wrapped block, even when it raises."""

        if not self._enabled:
            yield
            return
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    def _emit(self, metric: str, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        segments = [f"{key}={_stringify(value)}" for key, value in sorted(fields.items())]
        segments.extend(f"{key}={_stringify(value)}" for key, value in sorted(tags.items()))
        message = f"{self._namespace}.{metric}"
        if segments:
            message = f"{message} {' '.join(segments)}"
        self._logger.info(message)

    def _observe(self, kind: str, metric: str, tags: dict[str, Any], apply) -> None:
        if not self.prometheus_enabled:
            return
        label_keys = tuple(sorted(tags))
        label_names = tuple(_sanitize_label(key) for key in label_keys)
        cache_key = (kind, metric, label_names)
        instrument = self._prom_metrics.get(cache_key)
        if instrument is None:
            factory, description = _PROM_KINDS[kind]
            instrument = factory(
                self._prom_metric_name(metric),
                f"{metric} {description}",
                labelnames=list(label_names),
                registry=self._registry,
            )
            self._prom_metrics[cache_key] = instrument
        if label_names:
            values = {name: _stringify(tags[key]) for name, key in zip(label_names, label_keys)}
            instrument = instrument.labels(**values)
        apply(instrument)

    def _prom_metric_name(self, metric: str) -> str:
        cleaned = _PROM_NAME_RE.sub("_", metric)
        return f"{_PROM_NAME_RE.sub('_', self._namespace)}_{cleaned}".strip("_")


def _clean(tags: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in tags.items() if value is not None}


def _sanitize_label(label: str) -> str:
    return _PROM_NAME_RE.sub("_", label) or "label"


def _stringify(value: Any) -> str:
    if isinstance(value, float):
        return f"{int(value)}" if value.is_integer() else f"{value:.4f}"
    return str(value)


__all__ = ["MetricsRecorder"]
