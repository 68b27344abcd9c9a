"""
surge - HTTP load generation with virtual users, ramp stages and thresholds.

Script usage (k6 style):
    # load_test.py
    options = {
        "stages": [
            {"duration": "30s", "target": 20},
            {"duration": "1m", "target": 20},
            {"duration": "30s", "target": 0},
        ],
        "thresholds": {
            "http_req_duration": ["p(95)<500"],
            "errors": ["rate<0.1"],
        },
    }

    def default(session, data):
        res = session.http.get("/health")
        session.check(res, {"status is 200": lambda r: r.status == 200})
        session.sleep(1)

    $ surge run load_test.py

Programmatic usage:
    from surge import FunctionScenario, ScenarioRunner

    scenario = FunctionScenario(default, options={"vus": 5, "duration": "10s"})
    result = ScenarioRunner(scenario, base_url="http://localhost:8000").run()
    result.raise_for_thresholds()
"""

from surge.exceptions import (  # noqa: F401
    CheckFailure,
    DecodeError,
    IterationInterrupted,
    RequestError,
    SetupError,
    SurgeConfigError,
    SurgeError,
    TeardownError,
    ThresholdFailure,
)
from surge.models import (  # noqa: F401
    Executor,
    MetricSummary,
    RunResult,
    ScenarioOptions,
    Stage,
    ThresholdResult,
    ThresholdSpec,
    parse_duration,
)
from surge.metrics import MetricKind, MetricRecorder, MetricsSnapshot  # noqa: F401
from surge.http import HttpClient, Response  # noqa: F401
from surge.scenario import FunctionScenario, Scenario, freeze, load_script  # noqa: F401
from surge.vu import Session, VirtualUser  # noqa: F401
from surge.scheduler import StageScheduler, target_at  # noqa: F401
from surge.thresholds import ThresholdEvaluator  # noqa: F401
from surge.runner import ScenarioRunner  # noqa: F401
from surge.summary import export_summary, format_summary  # noqa: F401

__version__ = "0.1.0"

__all__ = [
    "ScenarioRunner",
    "Scenario",
    "FunctionScenario",
    "load_script",
    "freeze",
    "Session",
    "VirtualUser",
    "StageScheduler",
    "target_at",
    "ThresholdEvaluator",
    "HttpClient",
    "Response",
    "MetricRecorder",
    "MetricKind",
    "MetricsSnapshot",
    "ScenarioOptions",
    "Stage",
    "ThresholdSpec",
    "ThresholdResult",
    "MetricSummary",
    "RunResult",
    "Executor",
    "parse_duration",
    "format_summary",
    "export_summary",
    "SurgeError",
    "SurgeConfigError",
    "SetupError",
    "RequestError",
    "DecodeError",
    "CheckFailure",
    "ThresholdFailure",
    "TeardownError",
    "IterationInterrupted",
]
