"""
Runtime configuration from environment variables, and profile selection.

Usage:
    from surge.config import get_settings

    settings = get_settings()
    print(settings.api_url, settings.profile)
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Mapping, Optional, Union

from surge.exceptions import SurgeConfigError
from surge.models import ScenarioOptions

DEFAULT_API_URL = "http://localhost:8000"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

OptionsLike = Union[ScenarioOptions, Mapping[str, Any]]


class Settings:
    """Engine configuration loaded from environment variables."""

    def __init__(self) -> None:
        # Target
        self.api_url: str = os.getenv("API_URL", DEFAULT_API_URL)
        self.http_timeout_seconds: float = float(
            os.getenv("SURGE_HTTP_TIMEOUT", "60")
        )

        # Scenario selection
        self.profile: Optional[str] = os.getenv("SURGE_PROFILE") or None

        # Scheduler
        self.tick_seconds: float = float(os.getenv("SURGE_TICK_SECONDS", "0.1"))
        self.join_timeout_seconds: float = float(
            os.getenv("SURGE_JOIN_TIMEOUT", "5")
        )

        # Metrics
        self.metric_capacity: int = int(os.getenv("SURGE_METRIC_CAPACITY", "100000"))

        # Output
        self.log_level: str = os.getenv("SURGE_LOG_LEVEL", "WARNING").upper()
        self.summary_export: Optional[str] = os.getenv("SURGE_SUMMARY_EXPORT") or None


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()


def configure_logging(level: Union[str, int] = "WARNING") -> None:
    """Configure the root logger for command line runs."""
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise SurgeConfigError(f"Unknown log level: {level}", code="invalid_log_level")
        level = resolved
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def _coerce(options: OptionsLike) -> ScenarioOptions:
    if isinstance(options, ScenarioOptions):
        return options
    if isinstance(options, Mapping):
        return ScenarioOptions.from_dict(options)
    raise SurgeConfigError(
        "Options must be a mapping or ScenarioOptions",
        details={"type": type(options).__name__},
    )


def select_options(
    *,
    profiles: Optional[Mapping[str, OptionsLike]] = None,
    options: Optional[OptionsLike] = None,
    profile: Optional[str] = None,
) -> ScenarioOptions:
    """
    Pick the options for this run.

    Selection is explicit: a named profile must exist in `profiles`
    ("default" also matches the plain `options`). Without a name, `options`
    wins, then `profiles["default"]`.

    Raises:
        SurgeConfigError: If the profile is unknown or nothing is defined.
    """
    profiles = profiles or {}
    if profile is not None:
        if profile in profiles:
            return _coerce(profiles[profile])
        if profile == "default" and options is not None:
            return _coerce(options)
        raise SurgeConfigError(
            f"Unknown profile {profile!r}",
            code="unknown_profile",
            details={"available": sorted(profiles)},
        )
    if options is not None:
        return _coerce(options)
    if "default" in profiles:
        return _coerce(profiles["default"])
    raise SurgeConfigError(
        "No options defined; set `options` or a `default` profile",
        code="missing_options",
        details={"available": sorted(profiles)},
    )
