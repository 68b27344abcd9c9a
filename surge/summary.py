"""
Run summary: per-metric statistics, text report and JSON export.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional, Union

from surge.metrics.snapshot import MetricKind, MetricSample, MetricsSnapshot
from surge.models import MetricSummary, RunResult, format_duration

TREND_STATS = ("avg", "min", "med", "max", "p(90)", "p(95)", "p(99)")


def summarize_sample(sample: MetricSample) -> MetricSummary:
    """Summary statistics appropriate to the metric's kind."""
    values: Dict[str, Optional[float]]
    if sample.kind is MetricKind.TREND:
        values = {stat: sample.aggregate(stat) for stat in TREND_STATS}
    elif sample.kind is MetricKind.RATE:
        values = {
            "rate": sample.rate,
            "passes": float(sample.non_zero),
            "fails": float(sample.count - sample.non_zero),
        }
    elif sample.kind is MetricKind.COUNTER:
        values = {"count": sample.total, "rate": sample.rate}
    else:
        values = {"value": sample.last, "min": sample.minimum, "max": sample.maximum}
    return MetricSummary(
        name=sample.name, kind=sample.kind.value, count=sample.count, values=values
    )


def summarize_metrics(snapshot: MetricsSnapshot) -> Dict[str, MetricSummary]:
    """Summaries for every metric that received at least one observation."""
    return {
        name: summarize_sample(sample)
        for name, sample in sorted(snapshot.items())
        if sample.has_data
    }


def _fmt(val: Optional[float], decimals: int = 2) -> str:
    """Format a value, handling None."""
    if val is None:
        return "N/A"
    return f"{val:.{decimals}f}"


def _metric_line(summary: MetricSummary) -> str:
    v = summary.values
    if summary.kind == MetricKind.TREND.value:
        stats = " ".join(f"{stat}={_fmt(v.get(stat))}" for stat in TREND_STATS)
        return f"  {summary.name}: {stats}"
    if summary.kind == MetricKind.RATE.value:
        rate = v.get("rate")
        pct = "N/A" if rate is None else f"{rate:.2%}"
        return (
            f"  {summary.name}: {pct} "
            f"({int(v.get('passes') or 0)} of {summary.count})"
        )
    if summary.kind == MetricKind.COUNTER.value:
        return f"  {summary.name}: {_fmt(v.get('count'), 0)} ({_fmt(v.get('rate'))}/s)"
    return (
        f"  {summary.name}: value={_fmt(v.get('value'), 0)} "
        f"min={_fmt(v.get('min'), 0)} max={_fmt(v.get('max'), 0)}"
    )


def format_summary(result: RunResult) -> str:
    """
    Format a run result as human-readable text.

    Args:
        result: RunResult from ScenarioRunner.run().

    Returns:
        Formatted string suitable for printing.
    """
    lines: List[str] = []

    lines.append("=" * 60)
    lines.append(f"SCENARIO: {result.scenario} ({result.executor.value})")
    lines.append("=" * 60)
    lines.append(f"Duration: {format_duration(result.duration_seconds)}")
    lines.append(
        f"Iterations: {result.iterations} complete, "
        f"{result.interrupted_iterations} interrupted"
    )
    lines.append(f"VUs max: {result.vus_max}")
    if result.aborted:
        lines.append(f"Aborted: {result.abort_reason}")
    if result.teardown_error:
        lines.append(f"Teardown error: {result.teardown_error.get('message')}")

    if result.thresholds:
        lines.append("")
        lines.append("--- Thresholds ---")
        for threshold in result.thresholds:
            mark = "PASS" if threshold.passed else "FAIL"
            lines.append(
                f"  [{mark}] {threshold.metric}: {threshold.expression} "
                f"(observed {_fmt(threshold.observed, 4)})"
            )

    lines.append("")
    lines.append("--- Metrics ---")
    for summary in result.metrics.values():
        lines.append(_metric_line(summary))

    lines.append("")
    lines.append(f"RESULT: {'PASSED' if result.passed else 'FAILED'}")
    return "\n".join(lines)


def export_summary(result: RunResult, path: Union[str, Path]) -> Path:
    """Write the run result as JSON and return the path."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(
        json.dumps(result.to_log_dict(), indent=2, ensure_ascii=True) + "\n",
        encoding="utf-8",
    )
    return target
