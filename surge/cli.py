from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Sequence

from dotenv import load_dotenv

from surge.config import configure_logging, get_settings
from surge.exceptions import SetupError, SurgeConfigError, SurgeError
from surge.models import Executor, ScenarioOptions, format_duration
from surge.runner import ScenarioRunner
from surge.scenario import Scenario, load_script
from surge.summary import export_summary, format_summary

logger = logging.getLogger(__name__)

# Exit codes follow k6 so CI pipelines can tell failures apart.
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_THRESHOLDS_FAILED = 99
EXIT_INVALID_CONFIG = 104
EXIT_SETUP_FAILED = 107


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="surge", description="Run an HTTP load test scenario."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a scenario script.")
    run.add_argument("script", help="Python script defining the scenario.")
    _add_scenario_args(run)
    run.add_argument(
        "--summary-export", help="Write the run result as JSON to this path."
    )
    run.add_argument(
        "--tick", type=float, help="Scheduler tick in seconds (default 0.1)."
    )
    run.add_argument("--log-level", help="Log level (default WARNING).")

    inspect = sub.add_parser(
        "inspect", help="Print the resolved options of a script and exit."
    )
    inspect.add_argument("script", help="Python script defining the scenario.")
    _add_scenario_args(inspect)
    return parser.parse_args(argv)


def _add_scenario_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--profile", help="Named option set (e.g. dev, load, stress, spike)."
    )
    parser.add_argument("--vus", type=int, help="Virtual users (constant-vus).")
    parser.add_argument("--duration", help='Run length, e.g. "30s" (constant-vus).')
    parser.add_argument(
        "--stage",
        action="append",
        dest="stages",
        metavar="DURATION:TARGET",
        help='Ramp stage such as "30s:20"; repeat for several (ramping-vus).',
    )
    parser.add_argument("--base-url", help="Target host (default: API_URL).")


def _parse_stage(text: str) -> Dict[str, Any]:
    duration, sep, target = text.rpartition(":")
    if not sep or not duration:
        raise SurgeConfigError(
            f"Invalid stage {text!r}; expected DURATION:TARGET",
            code="invalid_stage",
        )
    try:
        return {"duration": duration, "target": int(target)}
    except ValueError as exc:
        raise SurgeConfigError(
            f"Invalid stage target in {text!r}", code="invalid_stage"
        ) from exc


def _apply_overrides(
    options: ScenarioOptions, args: argparse.Namespace
) -> ScenarioOptions:
    """Command line flags take precedence over the script's options."""
    if not (args.stages or args.duration or args.vus):
        return options
    overrides: Dict[str, Any] = {}
    if args.stages:
        overrides.update(
            executor=Executor.RAMPING_VUS,
            stages=[_parse_stage(stage) for stage in args.stages],
            duration=None,
        )
    elif args.duration:
        overrides.update(executor=Executor.CONSTANT_VUS, stages=[], duration=args.duration)
    if args.vus:
        overrides["vus"] = args.vus
    return options.with_overrides(**overrides)


def _load(args: argparse.Namespace) -> Scenario:
    profile = args.profile or get_settings().profile
    scenario = load_script(args.script, profile=profile)
    scenario.options = _apply_overrides(scenario.options, args)
    return scenario


def _inspect(args: argparse.Namespace) -> int:
    scenario = _load(args)
    options = scenario.options
    payload = {
        "scenario": scenario.name,
        "max_vus": options.max_vus,
        "total_duration": format_duration(options.total_duration),
        "options": options.model_dump(mode="json", by_alias=True),
    }
    print(json.dumps(payload, indent=2, ensure_ascii=True))
    return EXIT_OK


def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    scenario = _load(args)
    runner = ScenarioRunner(
        scenario, base_url=args.base_url, tick_seconds=args.tick
    )
    result = runner.run()
    print(format_summary(result))

    export_path = args.summary_export or settings.summary_export
    if export_path:
        export_summary(result, export_path)
        logger.info("Summary written to %s", export_path)

    if not result.passed:
        for failed in result.failed_thresholds:
            print(f"threshold failed: {failed.describe()}", file=sys.stderr)
        return EXIT_THRESHOLDS_FAILED
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    try:
        configure_logging(getattr(args, "log_level", None) or get_settings().log_level)
        if args.command == "inspect":
            return _inspect(args)
        return _run(args)
    except SurgeConfigError as exc:
        print(f"invalid configuration: {exc.message}", file=sys.stderr)
        if exc.details:
            print(json.dumps(exc.details, default=str), file=sys.stderr)
        return EXIT_INVALID_CONFIG
    except SetupError as exc:
        cause = exc.__cause__
        print(exc.message, file=sys.stderr)
        if cause is not None:
            logger.debug("Setup failure cause", exc_info=cause)
        return EXIT_SETUP_FAILED
    except SurgeError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
