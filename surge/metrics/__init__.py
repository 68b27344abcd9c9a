"""
Run metrics for load tests.

Provides:
- MetricRecorder: Thread-safe counters, gauges, rates and trends (bounded)
- MetricsSnapshot / MetricSample: Immutable views for thresholds and summaries
- Prometheus text export

Usage:
    from surge.metrics import MetricRecorder

    recorder = MetricRecorder()
    errors = recorder.rate("errors")
    errors.add(False)

    snap = recorder.snapshot()
    print(snap["errors"].rate)
    print(recorder.prometheus_format())
"""

from surge.metrics.snapshot import (
    MetricKind,
    MetricSample,
    MetricsSnapshot,
    percentile,
)
from surge.metrics.recorder import (
    BUILTIN_METRICS,
    CHECKS,
    DATA_RECEIVED,
    DATA_SENT,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    INTERRUPTED_ITERATIONS,
    ITERATION_DURATION,
    ITERATIONS,
    VUS,
    VUS_MAX,
    Metric,
    MetricRecorder,
    metric_key,
    parse_metric_key,
)

__all__ = [
    "MetricKind",
    "MetricSample",
    "MetricsSnapshot",
    "percentile",
    "Metric",
    "MetricRecorder",
    "metric_key",
    "parse_metric_key",
    "BUILTIN_METRICS",
    "CHECKS",
    "DATA_RECEIVED",
    "DATA_SENT",
    "HTTP_REQ_DURATION",
    "HTTP_REQ_FAILED",
    "HTTP_REQS",
    "INTERRUPTED_ITERATIONS",
    "ITERATION_DURATION",
    "ITERATIONS",
    "VUS",
    "VUS_MAX",
]
