"""
Scenario definitions: what each virtual user does.

A scenario has three phases:
    setup(session) -> data       once, before any virtual user starts
    run(session, data)           every iteration of every virtual user
    teardown(session, data)      once, after all virtual users stopped

Usage (class):
    class Browse(Scenario):
        name = "browse"
        options = ScenarioOptions.from_dict({"vus": 5, "duration": "30s"})

        def run(self, session, data):
            res = session.http.get("/health")
            session.check(res, {"status is 200": lambda r: r.status == 200})
            session.sleep(1)

Usage (functions, k6 style script):
    options = {"stages": [{"duration": "30s", "target": 20}]}

    def setup(session): ...
    def default(session, data): ...
    def teardown(session, data): ...
"""

from __future__ import annotations

import importlib.util
import logging
import sys
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from types import MappingProxyType, ModuleType
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional, Union

from surge.config import select_options
from surge.exceptions import SurgeConfigError
from surge.models import ScenarioOptions

if TYPE_CHECKING:
    from surge.vu import Session

logger = logging.getLogger(__name__)

SetupFn = Callable[["Session"], Any]
RunFn = Callable[["Session", Any], None]
TeardownFn = Callable[["Session", Any], None]


def freeze(value: Any) -> Any:
    """
    Recursively convert setup data to read-only containers.

    dict -> MappingProxyType, list/tuple -> tuple, set -> frozenset.
    Other values are returned unchanged.
    """
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(v) for v in value)
    return value


class Scenario(ABC):
    """Base class for load test scenarios."""

    name: str = "default"
    options: ScenarioOptions

    def setup(self, session: "Session") -> Any:
        """Prepare shared data (e.g. log in). The return value is frozen."""
        return None

    @abstractmethod
    def run(self, session: "Session", data: Any) -> None:
        """One iteration of a virtual user."""

    def teardown(self, session: "Session", data: Any) -> None:
        """Clean up after all virtual users stopped."""
        return None


class FunctionScenario(Scenario):
    """Scenario assembled from plain functions."""

    def __init__(
        self,
        run: RunFn,
        *,
        options: Union[ScenarioOptions, Mapping[str, Any]],
        name: str = "default",
        setup: Optional[SetupFn] = None,
        teardown: Optional[TeardownFn] = None,
    ) -> None:
        self.name = name
        self.options = (
            options
            if isinstance(options, ScenarioOptions)
            else ScenarioOptions.from_dict(options)
        )
        self._run = run
        self._setup = setup
        self._teardown = teardown

    def setup(self, session: "Session") -> Any:
        if self._setup is None:
            return None
        return self._setup(session)

    def run(self, session: "Session", data: Any) -> None:
        self._run(session, data)

    def teardown(self, session: "Session", data: Any) -> None:
        if self._teardown is not None:
            self._teardown(session, data)


def _import_script(path: Path) -> ModuleType:
    if not path.is_file():
        raise SurgeConfigError(
            f"Script not found: {path}", code="script_not_found", details={"path": str(path)}
        )
    module_name = f"surge_script_{path.stem}_{uuid.uuid4().hex[:8]}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise SurgeConfigError(f"Cannot load script: {path}", details={"path": str(path)})
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        sys.modules.pop(module_name, None)
        raise SurgeConfigError(
            f"Script failed to import: {exc}",
            code="script_import_failed",
            details={"path": str(path)},
        ) from exc
    return module


def load_script(path: Union[str, Path], profile: Optional[str] = None) -> Scenario:
    """
    Build a Scenario from a Python script.

    The script either defines `scenario` (a Scenario instance) or a
    `default(session, data)` function with optional `setup` and `teardown`.
    Options come from `options` and/or a `profiles` mapping of named option
    sets; `profile` picks one of them explicitly.

    Raises:
        SurgeConfigError: If the script cannot be imported, defines no
            scenario, or the profile is unknown.
    """
    script = Path(path)
    module = _import_script(script)
    profiles = getattr(module, "profiles", None)
    base_options = getattr(module, "options", None)

    declared = getattr(module, "scenario", None)
    if isinstance(declared, Scenario):
        fallback = getattr(declared, "options", None)
        if profile is None and base_options is None and fallback is not None:
            return declared
        declared.options = select_options(
            profiles=profiles,
            options=base_options if base_options is not None else fallback,
            profile=profile,
        )
        return declared

    run = getattr(module, "default", None)
    if not callable(run):
        raise SurgeConfigError(
            "Script must define `scenario` or a `default(session, data)` function",
            code="no_scenario",
            details={"path": str(script)},
        )
    options = select_options(profiles=profiles, options=base_options, profile=profile)
    logger.debug("Loaded script %s (profile=%s)", script, profile or "default")
    return FunctionScenario(
        run,
        options=options,
        name=getattr(module, "name", None) or profile or script.stem,
        setup=getattr(module, "setup", None),
        teardown=getattr(module, "teardown", None),
    )
