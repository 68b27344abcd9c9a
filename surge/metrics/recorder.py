"""
MetricRecorder: thread-safe accumulation of counters, gauges, rates and trends.

One recorder per run, injected into every virtual user. Writes take a
per-metric lock for a bounded critical section; reads go through
snapshot(), which returns an immutable MetricsSnapshot.

Retention is bounded: each metric keeps a ring buffer of the most recent
observations (for percentiles) plus exact streaming aggregates.
"""

from __future__ import annotations

import re
import threading
import time
from collections import deque
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from surge.exceptions import SurgeConfigError
from surge.metrics.snapshot import MetricKind, MetricSample, MetricsSnapshot

HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
DATA_SENT = "data_sent"
DATA_RECEIVED = "data_received"
CHECKS = "checks"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
INTERRUPTED_ITERATIONS = "interrupted_iterations"
VUS = "vus"
VUS_MAX = "vus_max"

BUILTIN_METRICS: Dict[str, MetricKind] = {
    HTTP_REQS: MetricKind.COUNTER,
    HTTP_REQ_DURATION: MetricKind.TREND,
    HTTP_REQ_FAILED: MetricKind.RATE,
    DATA_SENT: MetricKind.COUNTER,
    DATA_RECEIVED: MetricKind.COUNTER,
    CHECKS: MetricKind.RATE,
    ITERATIONS: MetricKind.COUNTER,
    ITERATION_DURATION: MetricKind.TREND,
    INTERRUPTED_ITERATIONS: MetricKind.COUNTER,
    VUS: MetricKind.GAUGE,
    VUS_MAX: MetricKind.GAUGE,
}

DEFAULT_CAPACITY = 100_000

_SUBMETRIC = re.compile(r"^([^{}\s]+)\{([^{}]*)\}$")

Tags = Mapping[str, str]


def parse_metric_key(key: str) -> Tuple[str, Dict[str, str]]:
    """
    Split "http_req_duration{name:health,method:GET}" into name and tag filter.

    Raises:
        SurgeConfigError: If the tag filter is malformed.
    """
    match = _SUBMETRIC.match(key.strip())
    if not match:
        if "{" in key or "}" in key:
            raise SurgeConfigError("Malformed metric key", details={"metric": key})
        return key.strip(), {}
    name, raw_tags = match.group(1), match.group(2)
    tags: Dict[str, str] = {}
    for part in raw_tags.split(","):
        if not part.strip():
            continue
        tag, sep, value = part.partition(":")
        if not sep or not tag.strip():
            raise SurgeConfigError("Malformed tag filter", details={"metric": key})
        tags[tag.strip()] = value.strip()
    return name, tags


def metric_key(name: str, tags: Tags) -> str:
    """Canonical sub-metric key, tags sorted by name."""
    if not tags:
        return name
    inner = ",".join(f"{k}:{v}" for k, v in sorted(tags.items()))
    return f"{name}{{{inner}}}"


class _MetricValue:
    """Thread-safe storage for one metric."""

    def __init__(self, name: str, kind: MetricKind, capacity: int) -> None:
        self.name = name
        self.kind = kind
        self._observations: Deque[Tuple[float, float]] = deque(maxlen=capacity)
        self._count = 0
        self._sum = 0.0
        self._non_zero = 0
        self._min: Optional[float] = None
        self._max: Optional[float] = None
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    def observe(self, value: float, ts: float) -> None:
        with self._lock:
            self._observations.append((ts, value))
            self._count += 1
            self._sum += value
            if value != 0:
                self._non_zero += 1
            if self._min is None or value < self._min:
                self._min = value
            if self._max is None or value > self._max:
                self._max = value
            self._last = value

    def observations(self) -> List[Tuple[float, float]]:
        with self._lock:
            return list(self._observations)

    def sample(self, elapsed_seconds: float) -> MetricSample:
        with self._lock:
            retained = [value for _, value in self._observations]
            count, total = self._count, self._sum
            minimum, maximum = self._min, self._max
            non_zero, last = self._non_zero, self._last
        # Sorted after releasing the lock.
        return MetricSample(
            name=self.name,
            kind=self.kind,
            count=count,
            total=total,
            minimum=minimum,
            maximum=maximum,
            non_zero=non_zero,
            last=last,
            values=tuple(sorted(retained)),
            elapsed_seconds=elapsed_seconds,
        )


class Metric:
    """
    Handle to one named metric in a recorder.

    Example:
        errors = recorder.rate("errors")
        errors.add(1)
    """

    def __init__(self, recorder: "MetricRecorder", name: str, kind: MetricKind) -> None:
        self._recorder = recorder
        self.name = name
        self.kind = kind

    def add(self, value: Any = 1, tags: Optional[Tags] = None) -> None:
        """
        Record one observation.

        For rate metrics, truthy values count as hits (booleans are accepted).
        """
        self._recorder.record(self.name, value, tags)

    def __repr__(self) -> str:
        return f"Metric(name={self.name!r}, kind={self.kind.value!r})"


class MetricRecorder:
    """
    Collects metric observations from many virtual users.

    Thread-safe, in-memory, bounded. Built-in HTTP and iteration metrics
    are declared at construction; custom metrics are declared through
    counter()/gauge()/rate()/trend().

    Example:
        recorder = MetricRecorder()
        recorder.record("http_req_duration", 120.5, {"name": "health"})
        snap = recorder.snapshot()
        print(snap["http_req_duration"].percentile(95))
    """

    def __init__(
        self,
        *,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._clock = clock
        self._started = clock()
        self._metrics: Dict[str, _MetricValue] = {}
        self._submetrics: Dict[str, List[Tuple[Dict[str, str], _MetricValue]]] = {}
        self._lock = threading.Lock()

        for name, kind in BUILTIN_METRICS.items():
            self.declare(name, kind)

    def declare(self, name: str, kind: MetricKind) -> Metric:
        """
        Get or create a metric of the given kind.

        Raises:
            SurgeConfigError: If the name exists with a different kind.
        """
        if not name or "{" in name:
            raise SurgeConfigError("Invalid metric name", details={"metric": name})
        with self._lock:
            existing = self._metrics.get(name)
            if existing is None:
                self._metrics[name] = _MetricValue(name, kind, self._capacity)
            elif existing.kind is not kind:
                raise SurgeConfigError(
                    f"Metric {name!r} already declared as {existing.kind.value}",
                    code="metric_kind_conflict",
                    details={"metric": name, "kind": kind.value},
                )
        return Metric(self, name, kind)

    def counter(self, name: str) -> Metric:
        return self.declare(name, MetricKind.COUNTER)

    def gauge(self, name: str) -> Metric:
        return self.declare(name, MetricKind.GAUGE)

    def rate(self, name: str) -> Metric:
        return self.declare(name, MetricKind.RATE)

    def trend(self, name: str) -> Metric:
        return self.declare(name, MetricKind.TREND)

    def kind_of(self, name: str) -> Optional[MetricKind]:
        with self._lock:
            metric = self._metrics.get(name)
        return metric.kind if metric is not None else None

    def add_submetric(self, key: str) -> str:
        """
        Register a tag-filtered sub-metric such as "http_req_duration{name:health}".

        Observations on the parent whose tags contain every filter tag are
        also recorded into the sub-metric. Returns the canonical key.
        """
        name, tags = parse_metric_key(key)
        if not tags:
            return name
        canonical = metric_key(name, tags)
        with self._lock:
            parent = self._metrics.get(name)
            if parent is None:
                raise SurgeConfigError(
                    f"Unknown metric {name!r}", details={"metric": key}
                )
            entries = self._submetrics.setdefault(name, [])
            if not any(sub.name == canonical for _, sub in entries):
                entries.append(
                    (tags, _MetricValue(canonical, parent.kind, self._capacity))
                )
        return canonical

    def record(self, name: str, value: Any, tags: Optional[Tags] = None) -> None:
        """
        Append one observation.

        Raises:
            SurgeConfigError: If the metric was never declared.
        """
        with self._lock:
            metric = self._metrics.get(name)
            subs = self._submetrics.get(name, ())
        if metric is None:
            raise SurgeConfigError(
                f"Unknown metric {name!r}; declare it first",
                code="unknown_metric",
                details={"metric": name},
            )
        numeric = float(value)
        ts = self._clock()
        metric.observe(numeric, ts)
        if subs:
            tags = tags or {}
            for wanted, sub in subs:
                if all(tags.get(k) == v for k, v in wanted.items()):
                    sub.observe(numeric, ts)

    def observations(self, name: str) -> List[Tuple[float, float]]:
        """Retained (timestamp, value) pairs for a metric, oldest first."""
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                for entries in self._submetrics.values():
                    for _, sub in entries:
                        if sub.name == name:
                            metric = sub
        if metric is None:
            raise SurgeConfigError(f"Unknown metric {name!r}", details={"metric": name})
        return metric.observations()

    @property
    def elapsed_seconds(self) -> float:
        return max(self._clock() - self._started, 0.0)

    def snapshot(self) -> MetricsSnapshot:
        """Immutable view of every metric and sub-metric."""
        elapsed = self.elapsed_seconds
        with self._lock:
            values = list(self._metrics.values())
            for entries in self._submetrics.values():
                values.extend(sub for _, sub in entries)
        samples = {value.name: value.sample(elapsed) for value in values}
        return MetricsSnapshot(
            taken_at=self._clock(),
            elapsed_seconds=elapsed,
            samples=MappingProxyType(samples),
        )

    def prometheus_format(self, prefix: str = "surge") -> str:
        """
        Export metrics in Prometheus text exposition format.

        Counters and gauges map directly; rates are exported as a gauge of
        the non-zero share; trends as summaries with p50/p90/p95/p99.
        """
        snap = self.snapshot()
        lines: List[str] = []

        for key in sorted(snap):
            sample = snap[key]
            base, tags = parse_metric_key(key)
            name = f"{prefix}_{base}"
            labels = ",".join(f'{k}="{v}"' for k, v in sorted(tags.items()))

            def series(suffix: str = "", extra: str = "") -> str:
                parts = [p for p in (labels, extra) if p]
                inner = f"{{{','.join(parts)}}}" if parts else ""
                return f"{name}{suffix}{inner}"

            lines.append("")
            if sample.kind is MetricKind.COUNTER:
                lines.append(f"# TYPE {name} counter")
                lines.append(f"{series('_total')} {sample.total}")
            elif sample.kind is MetricKind.GAUGE:
                lines.append(f"# TYPE {name} gauge")
                lines.append(f"{series()} {sample.last if sample.last is not None else 0}")
            elif sample.kind is MetricKind.RATE:
                lines.append(f"# TYPE {name} gauge")
                lines.append(f"{series()} {sample.rate if sample.rate is not None else 0}")
            else:
                lines.append(f"# TYPE {name} summary")
                for q in (50, 90, 95, 99):
                    value = sample.percentile(q)
                    if value is not None:
                        quantile = 'quantile="%s"' % (q / 100)
                        lines.append(f"{series(extra=quantile)} {value}")
                lines.append(f"{series('_sum')} {sample.total}")
                lines.append(f"{series('_count')} {sample.count}")

        return "\n".join(lines).lstrip("\n")
