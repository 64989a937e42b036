"""Rolling baselines and deviation thresholds for the adaptation loop."""

from __future__ import annotations

from pydantic import BaseModel, Field


class MetricThreshold(BaseModel):
    """How far a metric may drift from its baseline before it deviates.

    The effective threshold is the larger of an absolute floor and a
    fraction of the baseline, so near-zero baselines still tolerate noise.
    """

    absolute: float = Field(default=0.05, ge=0.0)
    relative: float = Field(default=0.25, ge=0.0)

    def for_baseline(self, baseline: float) -> float:
        return max(self.absolute, self.relative * abs(baseline))


DEFAULT_THRESHOLDS: dict[str, MetricThreshold] = {
    "success_rate": MetricThreshold(absolute=0.1, relative=0.2),
    "failure_rate": MetricThreshold(absolute=0.1, relative=0.25),
    "escalation_rate": MetricThreshold(absolute=0.1, relative=0.25),
    "halt_rate": MetricThreshold(absolute=0.1, relative=0.25),
    "unallocated_rate": MetricThreshold(absolute=0.1, relative=0.25),
    "latency_ms": MetricThreshold(absolute=50.0, relative=0.5),
    "write_contention": MetricThreshold(absolute=0.1, relative=0.5),
}


class RollingBaseline:
    """Exponential moving average per metric.

    The first observation of a metric seeds its baseline.
    """

    def __init__(self, alpha: float = 0.3) -> None:
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        self.alpha = alpha
        self._values: dict[str, float] = {}
        self._observations: dict[str, int] = {}

    def get(self, metric: str) -> float | None:
        return self._values.get(metric)

    def observations(self, metric: str) -> int:
        return self._observations.get(metric, 0)

    def update(self, metric: str, value: float) -> float:
        """Fold ``value`` into the baseline and return the new baseline."""
        prior = self._values.get(metric)
        if prior is None:
            updated = value
        else:
            updated = self.alpha * value + (1 - self.alpha) * prior
        self._values[metric] = updated
        self._observations[metric] = self._observations.get(metric, 0) + 1
        return updated

    def seed(self, metric: str, value: float) -> None:
        self._values[metric] = value
        self._observations.setdefault(metric, 1)

    def export(self) -> dict[str, float]:
        return dict(self._values)
