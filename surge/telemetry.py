"""Optional Logfire integration for run lifecycle spans and events."""
from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

_logfire = None
_configured = False


def _load_logfire():
    global _logfire
    if _logfire is not None:
        return _logfire
    try:
        import logfire
    except Exception:
        _logfire = False
        return _logfire
    _logfire = logfire
    return _logfire


def _env_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _stderr_enabled() -> bool:
    return _env_truthy(os.getenv("SURGE_TELEMETRY_STDERR"))


def _console_setting():
    env_console = os.getenv("SURGE_LOGFIRE_CONSOLE")
    if env_console is not None:
        return None if _env_truthy(env_console) else False
    return False


def enabled() -> bool:
    logfire = _load_logfire()
    if not logfire:
        return False
    flag = os.getenv("SURGE_LOGFIRE")
    if flag is not None:
        return _env_truthy(flag)
    return False


def configure() -> bool:
    logfire = _load_logfire()
    if not logfire or not enabled():
        return False
    global _configured
    if not _configured:
        try:
            logfire.configure(console=_console_setting())
            _configured = True
        except Exception as exc:
            logger.debug("Logfire configuration failed: %s", exc)
            return False
        _instrument_logfire(logfire)
    return True


def _instrument_logfire(logfire: Any) -> None:
    # Virtual user requests show up as spans when enabled.
    flag = os.getenv("SURGE_LOGFIRE_INSTRUMENT_HTTPX")
    if _env_truthy(flag):
        try:
            logfire.instrument_httpx()
        except Exception as exc:
            logger.debug("httpx instrumentation failed: %s", exc)


@contextmanager
def span(name: str, **attrs: Any) -> Iterator[None]:
    logfire = _load_logfire()
    if not logfire or not enabled() or not configure():
        yield
        return
    with logfire.span(name, **attrs):
        yield


def log(level: str, message: str, **attrs: Any) -> None:
    py_level = logging.getLevelName(level.upper())
    if not isinstance(py_level, int):
        py_level = logging.INFO
    logger.log(py_level, "%s %s", message, attrs)

    logfire = _load_logfire()
    if logfire and enabled() and configure():
        fn = getattr(logfire, level, None) or logfire.info
        try:
            fn(message, **attrs)
        except Exception as exc:
            logger.debug("Logfire %s failed: %s", level, exc)
    if _stderr_enabled():
        print(f"[telemetry] {message} {attrs}", file=sys.stderr)
