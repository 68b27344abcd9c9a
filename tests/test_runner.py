"""Tests for the scenario runner: lifecycle, failure handling, verdict."""

import threading
import time

import httpx
import pytest

from surge.exceptions import SetupError, SurgeConfigError
from surge.models import Executor
from surge.runner import ScenarioRunner
from surge.scenario import FunctionScenario
from tests.support.mock_api import BASE_URL, MockApi


def health_check(session, data):
    res = session.http.get("/health")
    session.check(res, {"status is 200": lambda r: r.status == 200})
    session.sleep(0.01)


def runner_for(scenario, api, **kwargs) -> ScenarioRunner:
    kwargs.setdefault("tick_seconds", 0.02)
    return ScenarioRunner(
        scenario, base_url=BASE_URL, transport=api.transport, **kwargs
    )


class TestLifecycle:
    def test_setup_once_before_iterations(self):
        events = []
        lock = threading.Lock()

        def setup(session):
            with lock:
                events.append(("setup", time.monotonic()))
            res = session.http.post("/auth/login", json={"email": "a", "password": "b"})
            return {"token": res.json()["token"]}

        def run(session, data):
            with lock:
                events.append(("iteration", time.monotonic()))
            res = session.http.get(
                "/auth/me", headers={"Authorization": f"Bearer {data['token']}"}
            )
            session.check(res, {"profile ok": lambda r: r.status == 200})
            session.sleep(0.01)

        scenario = FunctionScenario(
            run,
            options={"vus": 3, "duration": "0.3s", "gracefulStop": "1s"},
            setup=setup,
        )
        api = MockApi()
        result = runner_for(scenario, api).run()

        kinds = [kind for kind, _ in events]
        assert kinds.count("setup") == 1
        assert kinds[0] == "setup"
        setup_at = events[0][1]
        assert all(at >= setup_at for _, at in events[1:])
        assert api.count("/auth/login") == 1
        assert result.passed
        assert result.iterations == kinds.count("iteration")
        assert result.vus_max == 3

    def test_teardown_once_after_users_stopped(self):
        counts = {"iterations": 0, "at_teardown": None, "teardown": 0}
        lock = threading.Lock()

        def run(session, data):
            with lock:
                counts["iterations"] += 1
            session.sleep(0.01)

        def teardown(session, data):
            counts["teardown"] += 1
            counts["at_teardown"] = counts["iterations"]

        scenario = FunctionScenario(
            run, options={"vus": 2, "duration": "0.2s"}, teardown=teardown
        )
        runner_for(scenario, MockApi()).run()
        time.sleep(0.05)
        assert counts["teardown"] == 1
        assert counts["at_teardown"] == counts["iterations"]

    def test_setup_failure_generates_no_load(self):
        iterations = []

        def setup(session):
            session.http.post("/auth/login", json={}).raise_for_status()
            raise RuntimeError("login rejected")

        scenario = FunctionScenario(
            lambda session, data: iterations.append(1),
            options={"vus": 2, "duration": "1s"},
            name="broken",
            setup=setup,
        )
        api = MockApi()
        runner = runner_for(scenario, api)
        with pytest.raises(SetupError) as exc_info:
            runner.run()

        assert exc_info.value.scenario == "broken"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert iterations == []
        assert api.calls == [("POST", "/auth/login")]
        assert runner.recorder.snapshot()["iterations"].count == 0

    def test_teardown_failure_is_not_fatal(self):
        def teardown(session, data):
            raise RuntimeError("cleanup failed")

        scenario = FunctionScenario(
            health_check,
            options={
                "vus": 1,
                "duration": "0.2s",
                "thresholds": {"errors": ["rate<0.1"]},
            },
            teardown=teardown,
        )
        result = runner_for(scenario, MockApi()).run()
        assert result.passed
        assert result.teardown_error["error"] == "TeardownError"
        assert "cleanup failed" in result.teardown_error["message"]

    def test_teardown_runs_when_load_phase_raises(self):
        calls = []

        def on_tick(info):
            raise RuntimeError("observer broke")

        scenario = FunctionScenario(
            health_check,
            options={"vus": 1, "duration": "1s", "gracefulStop": "1s"},
            teardown=lambda session, data: calls.append("teardown"),
        )
        with pytest.raises(RuntimeError, match="observer broke"):
            runner_for(scenario, MockApi(), on_tick=on_tick).run()
        assert calls == ["teardown"]

    def test_invalid_threshold_fails_before_setup(self):
        setups = []
        scenario = FunctionScenario(
            health_check,
            options={
                "vus": 1,
                "duration": "1s",
                "thresholds": {"http_req_duration": ["rate<0.1"]},
            },
            setup=lambda session: setups.append(1),
        )
        with pytest.raises(SurgeConfigError):
            runner_for(scenario, MockApi())
        assert setups == []


class TestVerdict:
    def test_two_of_twenty_errors_fail_the_run(self):
        api = MockApi(fail_requests=[5, 13])
        done = threading.Event()
        lock = threading.Lock()
        sent = [0]

        def run(session, data):
            with lock:
                if sent[0] >= 20:
                    done.set()
                    session.sleep(0.01)
                    return
                sent[0] += 1
            health_check(session, data)

        scenario = FunctionScenario(
            run,
            options={
                "vus": 1,
                "duration": "1s",
                "gracefulStop": "1s",
                "thresholds": {
                    "errors": ["rate<0.1"],
                    "http_req_duration": ["p(95)<500"],
                },
            },
        )
        result = runner_for(scenario, api).run()

        assert done.is_set()
        assert api.count("/health") == 20
        errors = result.metrics["errors"]
        assert errors.count == 20
        assert errors.values["rate"] == pytest.approx(0.10)
        assert not result.passed
        (failed,) = result.failed_thresholds
        assert failed.metric == "errors"
        assert failed.observed == pytest.approx(0.10)

    def test_raised_check_failures_are_counted_once(self):
        api = MockApi(fail_requests=[5, 13])
        lock = threading.Lock()
        sent = [0]

        def run(session, data):
            with lock:
                if sent[0] >= 20:
                    session.sleep(0.01)
                    return
                sent[0] += 1
            res = session.http.get("/health")
            session.check(
                res, {"status is 200": lambda r: r.status == 200}, raise_on_fail=True
            )

        scenario = FunctionScenario(
            run,
            options={
                "vus": 1,
                "duration": "0.5s",
                "gracefulStop": "1s",
                "thresholds": {"errors": ["rate<0.1"]},
            },
        )
        result = runner_for(scenario, api).run()

        assert api.count("/health") == 20
        errors = result.metrics["errors"]
        assert errors.count == 20
        assert errors.values["rate"] == pytest.approx(0.10)
        assert not result.passed

    def test_metrics_summary(self):
        scenario = FunctionScenario(
            health_check, options={"vus": 2, "duration": "0.2s"}, name="smoke"
        )
        result = runner_for(scenario, MockApi()).run()

        assert result.scenario == "smoke"
        assert result.executor is Executor.CONSTANT_VUS
        assert result.passed
        assert not result.aborted
        duration = result.metrics["http_req_duration"]
        assert set(duration.values) == {
            "avg", "min", "med", "max", "p(90)", "p(95)", "p(99)"
        }
        assert result.metrics["http_reqs"].values["count"] > 0
        assert result.metrics["checks"].values["rate"] == 1.0
        assert result.finished_at >= result.started_at

    def test_connection_refused_counts_as_errors(self):
        def refused(request):
            raise httpx.ConnectError("refused", request=request)

        scenario = FunctionScenario(
            health_check,
            options={"vus": 1, "duration": "0.2s", "thresholds": {"errors": "rate<0.1"}},
        )
        runner = ScenarioRunner(
            scenario,
            base_url=BASE_URL,
            transport=httpx.MockTransport(refused),
            tick_seconds=0.02,
        )
        result = runner.run()
        assert not result.passed
        assert result.metrics["http_req_failed"].values["rate"] == 1.0

    def test_abort_on_fail_stops_early(self):
        scenario = FunctionScenario(
            health_check,
            options={
                "vus": 2,
                "duration": "10s",
                "gracefulStop": "1s",
                "thresholdEvalInterval": "0.05s",
                "thresholds": {"errors": [{"threshold": "rate<0.1", "abortOnFail": True}]},
            },
        )
        api = MockApi(routes={"/health": lambda r: httpx.Response(500)})
        started = time.monotonic()
        result = runner_for(scenario, api).run()

        assert time.monotonic() - started < 5
        assert result.aborted
        assert "errors: rate<0.1" in result.abort_reason
        assert not result.passed

    def test_on_tick_observer(self):
        ticks = []
        scenario = FunctionScenario(health_check, options={"vus": 1, "duration": "0.1s"})
        runner_for(scenario, MockApi(), on_tick=ticks.append).run()
        assert ticks
        assert all(t.active <= t.target for t in ticks)
