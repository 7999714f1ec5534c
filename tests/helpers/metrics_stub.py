from __future__ import annotations

from typing import Any


class StubMetrics:
    """Captures metrics emitted by the opportunity services."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._record("timing", metric, value_ms, tags)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._record("counter", metric, value, tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._record("gauge", metric, value, tags)

    def total(self, metric: str) -> float:
        """Sum of every counter increment recorded under `metric`."""
        return sum(
            call["value"] for call in self.calls if call["type"] == "counter" and call["metric"] == metric
        )

    def names(self, kind: str | None = None) -> list[str]:
        return [call["metric"] for call in self.calls if kind is None or call["type"] == kind]

    def _record(
        self, kind: str, metric: str, value: float, tags: dict[str, Any] | None
    ) -> None:
        self.calls.append({"type": kind, "metric": metric, "value": value, "tags": tags or {}})
