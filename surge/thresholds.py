"""
Threshold evaluation: pass/fail criteria over recorded metrics.

Expressions follow the k6 grammar:

    <aggregation> <operator> <number>

    aggregation: count | rate | value | avg | min | max | med | p(N)
    operator:    <  <=  >  >=  ==  ===  !=

Examples:
    http_req_duration: ["p(95)<500"]
    errors:            ["rate<0.1"]
    http_req_duration{name:/health}: ["avg<100"]

Evaluation is single-shot at run end, and additionally periodic while the
run is in progress when any threshold sets abort_on_fail.
"""

from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from surge.exceptions import SurgeConfigError
from surge.metrics.recorder import MetricRecorder, metric_key, parse_metric_key
from surge.metrics.snapshot import MetricsSnapshot, SUPPORTED_AGGREGATIONS, supports
from surge.models import ScenarioOptions, ThresholdResult, ThresholdSpec

logger = logging.getLogger(__name__)

_EXPRESSION = re.compile(
    r"^\s*(count|rate|value|avg|min|max|med|p\(\s*\d+(?:\.\d+)?\s*\))"
    r"\s*(===|==|!=|<=|>=|<|>)\s*"
    r"(-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)

_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
}


@dataclass(frozen=True)
class ThresholdExpression:
    """A parsed "aggregation operator value" expression."""

    aggregation: str
    operator: str
    value: float
    source: str

    @classmethod
    def parse(cls, text: str) -> "ThresholdExpression":
        """
        Parse a threshold expression.

        Raises:
            SurgeConfigError: If the expression does not match the grammar.
        """
        match = _EXPRESSION.match(text)
        if not match:
            raise SurgeConfigError(
                f"Invalid threshold expression {text!r}",
                code="invalid_threshold",
                details={"expression": text},
            )
        aggregation = re.sub(r"\s+", "", match.group(1))
        return cls(
            aggregation=aggregation,
            operator=match.group(2),
            value=float(match.group(3)),
            source=text.strip(),
        )

    def holds(self, observed: float) -> bool:
        return _OPERATORS[self.operator](observed, self.value)


@dataclass(frozen=True)
class Threshold:
    """One expression bound to one metric (or tag-filtered sub-metric)."""

    metric: str
    expression: ThresholdExpression
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    def evaluate(self, snapshot: MetricsSnapshot) -> ThresholdResult:
        """
        Evaluate against a snapshot.

        A metric with no observations passes with observed=None.
        """
        sample = snapshot.get(self.metric)
        if sample is None or not sample.has_data:
            return self._result(True, None)
        if not supports(sample.kind, self.expression.aggregation):
            logger.error(
                "Threshold %s: %s not supported for %s metrics",
                self.metric,
                self.expression.source,
                sample.kind.value,
            )
            return self._result(False, None)
        observed = sample.aggregate(self.expression.aggregation)
        if observed is None:
            return self._result(True, None)
        return self._result(self.expression.holds(observed), observed)

    def _result(self, passed: bool, observed: Optional[float]) -> ThresholdResult:
        return ThresholdResult(
            metric=self.metric,
            expression=self.expression.source,
            passed=passed,
            observed=observed,
            abort_on_fail=self.abort_on_fail,
        )


def build_thresholds(
    specs: Mapping[str, Sequence[ThresholdSpec]],
) -> List[Threshold]:
    """Parse every configured threshold; metric keys are canonicalised."""
    thresholds = []
    for key, metric_specs in specs.items():
        name, tags = parse_metric_key(key)
        canonical = metric_key(name, tags)
        for spec in metric_specs:
            thresholds.append(
                Threshold(
                    metric=canonical,
                    expression=ThresholdExpression.parse(spec.threshold),
                    abort_on_fail=spec.abort_on_fail,
                    delay_abort_eval=spec.delay_abort_eval,
                )
            )
    return thresholds


class ThresholdEvaluator:
    """
    Evaluates a run's thresholds.

    Example:
        evaluator = ThresholdEvaluator.from_options(options)
        evaluator.prepare(recorder)
        results = evaluator.evaluate(recorder.snapshot())
    """

    def __init__(self, thresholds: Sequence[Threshold]) -> None:
        self._thresholds = list(thresholds)

    @classmethod
    def from_options(cls, options: ScenarioOptions) -> "ThresholdEvaluator":
        return cls(build_thresholds(options.thresholds))

    @property
    def thresholds(self) -> List[Threshold]:
        return list(self._thresholds)

    @property
    def periodic(self) -> bool:
        """True when any threshold can abort the run early."""
        return any(t.abort_on_fail for t in self._thresholds)

    def prepare(self, recorder: MetricRecorder) -> None:
        """
        Validate thresholds against declared metrics and register sub-metrics.

        Metrics that are not declared yet (custom metrics created by the
        script) are checked when evaluated.

        Raises:
            SurgeConfigError: If an aggregation does not apply to a declared
                metric's kind, or a sub-metric's parent is unknown.
        """
        for threshold in self._thresholds:
            name, tags = parse_metric_key(threshold.metric)
            kind = recorder.kind_of(name)
            if kind is None:
                if tags:
                    raise SurgeConfigError(
                        f"Sub-metric {threshold.metric!r} refers to an undeclared metric",
                        code="unknown_metric",
                        details={"metric": threshold.metric},
                    )
                continue
            if not supports(kind, threshold.expression.aggregation):
                raise SurgeConfigError(
                    f"Threshold {threshold.expression.source!r} is not supported "
                    f"for {kind.value} metric {name!r}",
                    code="unsupported_aggregation",
                    details={
                        "metric": threshold.metric,
                        "supported": list(SUPPORTED_AGGREGATIONS[kind]),
                    },
                )
            if tags:
                recorder.add_submetric(threshold.metric)

    def evaluate(self, snapshot: MetricsSnapshot) -> List[ThresholdResult]:
        """Single-shot evaluation of every threshold."""
        return [threshold.evaluate(snapshot) for threshold in self._thresholds]

    def check_abort(
        self, snapshot: MetricsSnapshot, elapsed: Optional[float] = None
    ) -> Optional[ThresholdResult]:
        """
        Periodic evaluation of abort-on-fail thresholds.

        Thresholds still inside their delay_abort_eval window are skipped;
        `elapsed` defaults to the snapshot's elapsed time.

        Returns:
            The first failing abort-on-fail result, or None.
        """
        if elapsed is None:
            elapsed = snapshot.elapsed_seconds
        for threshold in self._thresholds:
            if not threshold.abort_on_fail:
                continue
            if elapsed < threshold.delay_abort_eval:
                continue
            result = threshold.evaluate(snapshot)
            if not result.passed:
                return result
        return None


def verdict(results: Sequence[ThresholdResult]) -> bool:
    """A run passes only if every threshold passed."""
    return all(result.passed for result in results)
