"""
Scenario runner: setup, load generation, teardown, verdict.

Usage:
    from surge.runner import ScenarioRunner

    result = ScenarioRunner(scenario, base_url="http://localhost:8000").run()
    print(result.passed)
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

import httpx

from surge import telemetry
from surge.config import Settings, get_settings
from surge.exceptions import SetupError, TeardownError
from surge.http import HttpClient
from surge.metrics.recorder import INTERRUPTED_ITERATIONS, ITERATIONS, MetricRecorder
from surge.models import RunResult, utc_now
from surge.scenario import Scenario, freeze
from surge.scheduler import SchedulerStats, StageScheduler, TickInfo
from surge.summary import summarize_metrics
from surge.thresholds import ThresholdEvaluator, verdict
from surge.vu import Session, VirtualUser

logger = logging.getLogger(__name__)


class ScenarioRunner:
    """
    Runs one scenario end to end.

    Thresholds are validated before setup; setup runs exactly once before
    any virtual user starts and its output is frozen and shared; teardown
    runs exactly once after every user stopped.

    Args:
        scenario: What to run.
        base_url: Target host; defaults to the API_URL setting.
        transport: httpx transport override (tests use httpx.MockTransport).
        settings: Engine settings; defaults to get_settings().
        tick_seconds: Scheduler resolution override.
        http_timeout: Per-request timeout override in seconds.
        on_tick: Observer called after every scheduler tick.
    """

    def __init__(
        self,
        scenario: Scenario,
        *,
        base_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        settings: Optional[Settings] = None,
        tick_seconds: Optional[float] = None,
        http_timeout: Optional[float] = None,
        on_tick: Optional[Callable[[TickInfo], None]] = None,
    ) -> None:
        self.scenario = scenario
        self.options = scenario.options
        self._settings = settings or get_settings()
        self.base_url = base_url or self._settings.api_url
        self._transport = transport
        self._tick_seconds = tick_seconds or self._settings.tick_seconds
        self._timeout = http_timeout or self._settings.http_timeout_seconds
        self._on_tick = on_tick

        self.recorder = MetricRecorder(capacity=self._settings.metric_capacity)
        if self.options.error_metric:
            self.recorder.rate(self.options.error_metric)
        self.evaluator = ThresholdEvaluator.from_options(self.options)
        self.evaluator.prepare(self.recorder)

        self._scheduler: Optional[StageScheduler] = None
        self._last_eval = 0.0

    def _http(self, interrupt: Optional[threading.Event] = None) -> HttpClient:
        return HttpClient(
            self.base_url,
            self.recorder,
            transport=self._transport,
            timeout=self._timeout,
            interrupt=interrupt,
        )

    def _session(self, http: HttpClient) -> Session:
        return Session(
            vu_id=0,
            iteration=0,
            http=http,
            recorder=self.recorder,
            error_metric=self.options.error_metric,
        )

    def _setup(self) -> Any:
        with telemetry.span("surge.setup", scenario=self.scenario.name):
            with self._http() as http:
                try:
                    data = self.scenario.setup(self._session(http))
                except Exception as exc:
                    raise SetupError(
                        f"Setup failed: {exc}", scenario=self.scenario.name
                    ) from exc
        return freeze(data)

    def _teardown(self, data: Any) -> Optional[dict]:
        with telemetry.span("surge.teardown", scenario=self.scenario.name):
            with self._http() as http:
                try:
                    self.scenario.teardown(self._session(http), data)
                except Exception as exc:
                    error = TeardownError(
                        f"Teardown failed: {exc}",
                        details={"scenario": self.scenario.name},
                    )
                    logger.exception("Teardown of %s failed", self.scenario.name)
                    return error.to_dict()
        return None

    def _vu_factory(self, data: Any) -> Callable[[int], VirtualUser]:
        def build(vu_id: int) -> VirtualUser:
            return VirtualUser(
                vu_id,
                self.scenario,
                data,
                self.recorder,
                self._http,
                error_metric=self.options.error_metric,
            )

        return build

    def _handle_tick(self, info: TickInfo) -> None:
        if self.evaluator.periodic and self._scheduler is not None:
            if info.elapsed - self._last_eval >= self.options.threshold_eval_interval:
                self._last_eval = info.elapsed
                failed = self.evaluator.check_abort(self.recorder.snapshot(), info.elapsed)
                if failed is not None:
                    self._scheduler.abort(f"threshold {failed.describe()} failed")
        if self._on_tick is not None:
            self._on_tick(info)

    def run(self) -> RunResult:
        """
        Execute the scenario.

        Raises:
            SetupError: If setup failed; no load is generated.
        """
        started_at = utc_now()
        started = time.monotonic()
        name = self.scenario.name
        telemetry.log(
            "info",
            "run_started",
            scenario=name,
            executor=self.options.executor.value,
            max_vus=self.options.max_vus,
            duration=self.options.total_duration,
        )

        data = self._setup()

        start_vus, stages = self.options.schedule()
        self._scheduler = StageScheduler(
            start_vus,
            stages,
            self._vu_factory(data),
            self.recorder,
            graceful_ramp_down=self.options.graceful_ramp_down,
            graceful_stop=self.options.graceful_stop,
            tick_seconds=self._tick_seconds,
            join_timeout=self._settings.join_timeout_seconds,
            on_tick=self._handle_tick,
        )
        teardown_error: Optional[dict] = None
        try:
            with telemetry.span("surge.load", scenario=name):
                stats = self._scheduler.run()
        finally:
            # The scheduler drains every user before returning or raising.
            teardown_error = self._teardown(data)

        snapshot = self.recorder.snapshot()
        thresholds = self.evaluator.evaluate(snapshot)
        result = self._result(
            stats,
            snapshot,
            thresholds,
            started_at=started_at,
            duration=time.monotonic() - started,
            teardown_error=teardown_error,
        )
        telemetry.log(
            "info" if result.passed else "warning",
            "run_finished",
            scenario=name,
            passed=result.passed,
            aborted=result.aborted,
            iterations=result.iterations,
        )
        return result

    def _result(
        self,
        stats: SchedulerStats,
        snapshot: Any,
        thresholds: list,
        *,
        started_at: Any,
        duration: float,
        teardown_error: Optional[dict],
    ) -> RunResult:
        iterations = snapshot[ITERATIONS]
        interrupted = snapshot[INTERRUPTED_ITERATIONS]
        return RunResult(
            scenario=self.scenario.name,
            executor=self.options.executor,
            passed=verdict(thresholds),
            aborted=stats.aborted,
            abort_reason=stats.abort_reason,
            started_at=started_at,
            finished_at=utc_now(),
            duration_seconds=duration,
            iterations=int(iterations.total),
            interrupted_iterations=int(interrupted.total),
            vus_max=stats.vus_max,
            thresholds=thresholds,
            metrics=summarize_metrics(snapshot),
            teardown_error=teardown_error,
        )
