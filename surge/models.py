from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from surge.exceptions import SurgeConfigError, ThresholdFailure

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Convert a duration to seconds.

    Accepts numbers (seconds) and k6-style strings such as "500ms", "30s",
    "1m", "1m30s" or "2h".

    Raises:
        SurgeConfigError: If the value cannot be parsed or is negative.
    """
    if isinstance(value, bool):
        raise SurgeConfigError("Invalid duration", details={"value": value})
    if isinstance(value, (int, float)):
        if value < 0:
            raise SurgeConfigError("Duration must be >= 0", details={"value": value})
        return float(value)

    text = str(value).strip().lower()
    if not text:
        raise SurgeConfigError("Empty duration", details={"value": value})
    try:
        return parse_duration(float(text))
    except ValueError:
        pass

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise SurgeConfigError("Invalid duration", details={"value": value})
    return total


def format_duration(seconds: float) -> str:
    """Render seconds the way durations are written in options ("1m30s")."""
    if seconds < 1:
        return f"{seconds * 1000:g}ms"
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs:g}s")
    return "".join(parts)


def _duration_field(value: Any) -> Any:
    if value is None:
        return None
    try:
        return parse_duration(value)
    except SurgeConfigError as exc:
        raise ValueError(f"invalid duration: {value!r}") from exc


class Executor(str, Enum):
    """How the virtual user population is driven over time."""

    CONSTANT_VUS = "constant-vus"
    RAMPING_VUS = "ramping-vus"


class Stage(BaseModel):
    """
    One ramp stage: move linearly to `target` users over `duration`.

    Attributes:
        duration: Stage length in seconds (> 0). Strings like "30s" accepted.
        target: Virtual user count to reach at the end of the stage (>= 0).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    duration: float = Field(..., gt=0)
    target: int = Field(..., ge=0)

    @field_validator("duration", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> Any:
        return _duration_field(value)


class ThresholdSpec(BaseModel):
    """
    A pass/fail criterion on one metric.

    Attributes:
        threshold: Expression such as "p(95)<500" or "rate<0.1".
        abort_on_fail: Stop the run as soon as this threshold fails.
        delay_abort_eval: Seconds to wait before abort evaluation starts.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    threshold: str = Field(..., min_length=1)
    abort_on_fail: bool = Field(default=False, alias="abortOnFail")
    delay_abort_eval: float = Field(default=0.0, ge=0, alias="delayAbortEval")

    @field_validator("delay_abort_eval", mode="before")
    @classmethod
    def _parse_delay(cls, value: Any) -> Any:
        return _duration_field(value)


class ScenarioOptions(BaseModel):
    """
    Recognized scenario options.

    Keys may be given in snake_case or in the camelCase spelling used by
    k6 scripts (startVUs, gracefulRampDown, gracefulStop, abortOnFail).

    When `executor` is omitted it is inferred: `ramping-vus` if stages are
    given, otherwise `constant-vus`.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    executor: Executor
    vus: int = Field(default=1, ge=1)
    duration: Optional[float] = Field(default=None, gt=0)
    stages: Tuple[Stage, ...] = ()
    start_vus: int = Field(default=0, ge=0, alias="startVUs")
    graceful_ramp_down: float = Field(default=30.0, ge=0, alias="gracefulRampDown")
    graceful_stop: float = Field(default=30.0, ge=0, alias="gracefulStop")
    thresholds: Dict[str, Tuple[ThresholdSpec, ...]] = Field(default_factory=dict)
    error_metric: Optional[str] = Field(default="errors", alias="errorMetric")
    threshold_eval_interval: float = Field(
        default=2.0, gt=0, alias="thresholdEvalInterval"
    )

    @model_validator(mode="before")
    @classmethod
    def _infer_executor(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and data.get("executor") is None:
            data = dict(data)
            data["executor"] = (
                Executor.RAMPING_VUS if data.get("stages") else Executor.CONSTANT_VUS
            )
        return data

    @field_validator(
        "duration", "graceful_ramp_down", "graceful_stop", "threshold_eval_interval",
        mode="before",
    )
    @classmethod
    def _parse_durations(cls, value: Any) -> Any:
        return _duration_field(value)

    @field_validator("thresholds", mode="before")
    @classmethod
    def _normalize_thresholds(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            return value
        normalized: Dict[str, List[Any]] = {}
        for metric, specs in value.items():
            if isinstance(specs, (str, Mapping, ThresholdSpec)):
                specs = [specs]
            normalized[metric] = [
                {"threshold": spec} if isinstance(spec, str) else spec
                for spec in specs
            ]
        return normalized

    @model_validator(mode="after")
    def _check_executor(self) -> "ScenarioOptions":
        if self.executor is Executor.RAMPING_VUS and not self.stages:
            raise ValueError("ramping-vus requires at least one stage")
        if self.executor is Executor.CONSTANT_VUS:
            if self.duration is None:
                raise ValueError("constant-vus requires a duration")
            if self.stages:
                raise ValueError("constant-vus does not accept stages")
        return self

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScenarioOptions":
        """Validate raw options, converting validation errors to SurgeConfigError."""
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            raise SurgeConfigError(
                "Invalid scenario options",
                code="invalid_options",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    def schedule(self) -> Tuple[int, Tuple[Stage, ...]]:
        """
        Population plan as (start_vus, stages).

        constant-vus is a single flat stage that starts at `vus`.
        """
        if self.executor is Executor.CONSTANT_VUS:
            assert self.duration is not None
            return self.vus, (Stage(duration=self.duration, target=self.vus),)
        return self.start_vus, self.stages

    @property
    def total_duration(self) -> float:
        """Seconds from start until the last stage ends."""
        return sum(stage.duration for stage in self.schedule()[1])

    @property
    def max_vus(self) -> int:
        start, stages = self.schedule()
        return max([start] + [stage.target for stage in stages])

    def with_overrides(self, **overrides: Any) -> "ScenarioOptions":
        """
        Return validated options with the given fields replaced.

        Raises:
            SurgeConfigError: If the result is not a valid configuration.
        """
        data = self.model_dump()
        data.update(overrides)
        return ScenarioOptions.from_dict(data)


class ThresholdResult(BaseModel):
    """Outcome of one threshold expression."""

    model_config = ConfigDict(extra="forbid")

    metric: str
    expression: str
    passed: bool
    observed: Optional[float] = None
    abort_on_fail: bool = False

    def describe(self) -> str:
        return f"{self.metric}: {self.expression}"


class MetricSummary(BaseModel):
    """Summary statistics for one metric at the end of a run."""

    model_config = ConfigDict(extra="forbid")

    name: str
    kind: str
    count: int = Field(..., ge=0)
    values: Dict[str, Optional[float]] = Field(default_factory=dict)


class RunResult(BaseModel):
    """
    Final aggregation of a run. Created once, when the run ends.

    Attributes:
        scenario: Scenario name.
        executor: Executor kind that drove the run.
        passed: False if any threshold failed.
        aborted: True if an abort-on-fail threshold stopped the run early.
        abort_reason: Why the run was aborted, if it was.
        iterations: Completed iterations across all virtual users.
        interrupted_iterations: Iterations cut short by a hard stop.
        vus_max: Highest concurrent virtual user count reached.
        thresholds: Per-threshold detail.
        metrics: Per-metric summary statistics.
        teardown_error: Serialized TeardownError, if teardown failed.
    """

    model_config = ConfigDict(extra="forbid")

    scenario: str
    executor: Executor
    passed: bool
    aborted: bool = False
    abort_reason: Optional[str] = None

    started_at: datetime
    finished_at: datetime
    duration_seconds: float = Field(..., ge=0)

    iterations: int = Field(default=0, ge=0)
    interrupted_iterations: int = Field(default=0, ge=0)
    vus_max: int = Field(default=0, ge=0)

    thresholds: List[ThresholdResult] = Field(default_factory=list)
    metrics: Dict[str, MetricSummary] = Field(default_factory=dict)
    teardown_error: Optional[Dict[str, Any]] = None

    @property
    def failed_thresholds(self) -> List[ThresholdResult]:
        return [result for result in self.thresholds if not result.passed]

    def raise_for_thresholds(self) -> None:
        """Raise ThresholdFailure if any threshold failed."""
        failed = self.failed_thresholds
        if failed:
            raise ThresholdFailure(
                f"{len(failed)} threshold(s) failed",
                failed=[result.describe() for result in failed],
            )

    def to_log_dict(self) -> Dict[str, Any]:
        """
        Serialize to a dict suitable for JSON export.

        Returns a stable schema:
        {"type": "surge.run_result.v1", ...fields...}
        """
        data = self.model_dump(mode="json")
        data["type"] = "surge.run_result.v1"
        return data
