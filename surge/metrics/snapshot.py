"""
Immutable views over recorded metrics.

A MetricsSnapshot is what the threshold evaluator and the run summary read.
It never changes after creation, so it can be evaluated while virtual users
keep recording into the live recorder.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, Mapping, Optional, Sequence, Tuple

from surge.exceptions import SurgeConfigError

_PERCENTILE = re.compile(r"^p\((\d+(?:\.\d+)?)\)$")


class MetricKind(str, Enum):
    """Metric kinds and the aggregations they support."""

    COUNTER = "counter"
    GAUGE = "gauge"
    RATE = "rate"
    TREND = "trend"


SUPPORTED_AGGREGATIONS: Dict[MetricKind, Tuple[str, ...]] = {
    MetricKind.COUNTER: ("count", "rate"),
    MetricKind.GAUGE: ("value", "min", "max"),
    MetricKind.RATE: ("rate",),
    MetricKind.TREND: ("avg", "min", "max", "med", "p(N)"),
}


def percentile(sorted_values: Sequence[float], p: float) -> Optional[float]:
    """
    Linear interpolation between closest ranks.

    Args:
        sorted_values: Observations in ascending order.
        p: Percentile in [0, 100].

    Returns:
        The interpolated value, or None when there is no data.
    """
    if not sorted_values:
        return None
    k = (len(sorted_values) - 1) * (p / 100.0)
    lower = math.floor(k)
    upper = math.ceil(k)
    if lower == upper:
        return sorted_values[int(k)]
    return sorted_values[lower] * (upper - k) + sorted_values[upper] * (k - lower)


def parse_aggregation(name: str) -> Tuple[str, Optional[float]]:
    """Split "p(95)" into ("p", 95.0); other names map to (name, None)."""
    match = _PERCENTILE.match(name)
    if match:
        value = float(match.group(1))
        if not 0 <= value <= 100:
            raise SurgeConfigError(
                "Percentile must be between 0 and 100", details={"aggregation": name}
            )
        return "p", value
    return name, None


def supports(kind: MetricKind, aggregation: str) -> bool:
    base, _ = parse_aggregation(aggregation)
    allowed = SUPPORTED_AGGREGATIONS[kind]
    if base == "p":
        return "p(N)" in allowed
    return base in allowed


@dataclass(frozen=True)
class MetricSample:
    """
    Point-in-time state of one metric.

    Attributes:
        name: Metric name (sub-metrics include their tag filter).
        kind: Metric kind.
        count: Total observations since the run started (exact).
        total: Sum of all observed values (exact).
        minimum: Smallest observed value, or None.
        maximum: Largest observed value, or None.
        non_zero: Observations with a non-zero value (rate metrics).
        last: Most recent value (gauges).
        values: Retained observations, ascending (bounded window).
        elapsed_seconds: Run time at snapshot, for per-second counter rates.
    """

    name: str
    kind: MetricKind
    count: int
    total: float
    minimum: Optional[float]
    maximum: Optional[float]
    non_zero: int
    last: Optional[float]
    values: Tuple[float, ...] = field(repr=False)
    elapsed_seconds: float = 0.0

    @property
    def has_data(self) -> bool:
        return self.count > 0

    @property
    def rate(self) -> Optional[float]:
        """Non-zero share for rate metrics; per-second rate for counters."""
        if self.kind is MetricKind.COUNTER:
            if self.elapsed_seconds <= 0:
                return None
            return self.total / self.elapsed_seconds
        if self.count == 0:
            return None
        return self.non_zero / self.count

    @property
    def avg(self) -> Optional[float]:
        if self.count == 0:
            return None
        return self.total / self.count

    def percentile(self, p: float) -> Optional[float]:
        return percentile(self.values, p)

    def aggregate(self, aggregation: str) -> Optional[float]:
        """
        Compute a threshold aggregation ("count", "rate", "avg", "p(95)", ...).

        Raises:
            SurgeConfigError: If the aggregation does not apply to this kind.
        """
        if not supports(self.kind, aggregation):
            raise SurgeConfigError(
                f"Aggregation {aggregation!r} is not supported for {self.kind.value} metrics",
                code="unsupported_aggregation",
                details={"metric": self.name, "aggregation": aggregation},
            )
        base, p = parse_aggregation(aggregation)
        if base == "p":
            assert p is not None
            return self.percentile(p)
        if base == "count":
            return float(self.total)
        if base == "rate":
            return self.rate
        if base == "value":
            return self.last
        if base == "avg":
            return self.avg
        if base == "min":
            return self.minimum
        if base == "max":
            return self.maximum
        if base == "med":
            return self.percentile(50)
        raise SurgeConfigError(f"Unknown aggregation {aggregation!r}")


@dataclass(frozen=True)
class MetricsSnapshot(Mapping[str, MetricSample]):
    """Read-only mapping of metric name to MetricSample."""

    taken_at: float
    elapsed_seconds: float
    samples: Mapping[str, MetricSample]

    def __getitem__(self, name: str) -> MetricSample:
        return self.samples[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self.samples)

    def __len__(self) -> int:
        return len(self.samples)
