"""Metrics Registry — running aggregates for the telemetry boundary.

Each metric keeps count, sum, min and max. snapshot() exports
``{name: {count, avg, min, max}}`` for external tooling.
"""

from __future__ import annotations

from pydantic import BaseModel


class MetricSummary(BaseModel):
    count: int = 0
    total: float = 0.0
    min: float | None = None
    max: float | None = None

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count else 0.0

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)

    def export(self) -> dict[str, float]:
        return {
            "count": self.count,
            "avg": self.avg,
            "min": self.min if self.min is not None else 0.0,
            "max": self.max if self.max is not None else 0.0,
        }


class MetricsRegistry:
    """In-process metric aggregation, keyed by metric name."""

    def __init__(self) -> None:
        self._metrics: dict[str, MetricSummary] = {}

    def record(self, name: str, value: float) -> None:
        self._metrics.setdefault(name, MetricSummary()).observe(float(value))

    def increment(self, name: str) -> None:
        self.record(name, 1.0)

    def get(self, name: str) -> MetricSummary | None:
        return self._metrics.get(name)

    def names(self) -> list[str]:
        return sorted(self._metrics)

    def snapshot(self) -> dict[str, dict[str, float]]:
        return {name: m.export() for name, m in sorted(self._metrics.items())}

    def reset(self) -> None:
        self._metrics.clear()
