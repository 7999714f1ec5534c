from __future__ import annotations

import logging
import re
import secrets
from threading import Lock
from typing import Any

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from app.config import settings

logger = logging.getLogger("app.metrics")

_INVALID_METRIC_CHARS = re.compile(r"[^a-zA-Z0-9_]")


class MetricsReporter:
    """Lightweight metrics emitter supporting stdout and Prometheus backends."""

    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self._disabled = settings.metrics_disable
        self._namespace = settings.metrics_namespace or "opportunities"
        self._backend = (settings.metrics_backend or "stdout").lower()
        self._sample_rate = max(0.0, min(settings.metrics_sample_rate, 1.0))
        self._registry = registry or REGISTRY
        self._collectors: dict[tuple[str, str], Any] = {}
        self._lock = Lock()

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("timing", metric, value_ms, tags=tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("gauge", metric, value, tags=tags)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._emit("counter", metric, value, tags=tags)

    def _emit(
        self, metric_type: str, metric: str, value: float, *, tags: dict[str, Any] | None
    ) -> None:
        if self._disabled or value is None:
            return
        sampled = metric_type != "gauge" and self._sample_rate < 1.0
        if sampled:
            roll = secrets.randbelow(1_000_000) / 1_000_000
            if roll > self._sample_rate:
                return
        name = self._normalize_metric(metric)
        payload: dict[str, Any] = {
            "metric": name,
            "value": round(float(value), 4),
            "type": metric_type,
            "tags": tags or {},
        }
        if sampled:
            payload["sample_rate"] = round(self._sample_rate, 4)
        logger.debug("opportunities.metric", extra={"metrics": payload})
        if self._backend != "prometheus":
            return
        labels = {key: str(val) for key, val in (tags or {}).items()}
        try:
            collector = self._collector(metric_type, name, tuple(sorted(labels)))
            bound = collector.labels(**labels) if labels else collector
            if metric_type == "timing":
                bound.observe(float(value))
            elif metric_type == "gauge":
                bound.set(float(value))
            else:
                bound.inc(float(value))
        except ValueError as exc:
            self._log_backend_error(name, exc)

    def _collector(self, metric_type: str, name: str, label_names: tuple[str, ...]) -> Any:
        key = (metric_type, name)
        with self._lock:
            collector = self._collectors.get(key)
            if collector is None:
                prom_name = _INVALID_METRIC_CHARS.sub("_", name)
                factory = {"timing": Histogram, "gauge": Gauge}.get(metric_type, Counter)
                collector = factory(
                    prom_name,
                    f"{metric_type} {name}",
                    labelnames=label_names,
                    registry=self._registry,
                )
                self._collectors[key] = collector
            return collector

    def _normalize_metric(self, metric: str) -> str:
        trimmed = (metric or "").strip()
        if trimmed.startswith(f"{self._namespace}."):
            return trimmed
        return f"{self._namespace}.{trimmed}" if trimmed else self._namespace

    def _log_backend_error(self, metric: str, exc: Exception) -> None:
        logger.warning(
            "metrics.backend_error",
            extra={"metric": metric, "backend": self._backend, "error": type(exc).__name__},
        )


metrics = MetricsReporter()
