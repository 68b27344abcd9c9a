"""
Typed exceptions for surge.

Provides structured error handling with:
- SurgeError: Base exception for all surge errors
- SurgeConfigError: Invalid options, durations, thresholds or scripts
- SetupError: Fatal failure in scenario setup (aborts the run)
- RequestError: Network or timeout failure of a single HTTP request
- DecodeError: Response body is not valid JSON
- CheckFailure: A check on a response did not hold
- ThresholdFailure: One or more thresholds failed at the end of a run
- TeardownError: Failure in scenario teardown (logged, non-fatal)

All exceptions include structured attributes for programmatic handling.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class SurgeError(Exception):
    """Base exception for all surge errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or summary export."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class SurgeConfigError(SurgeError):
    """Configuration or validation error.

    Raised when:
    - Scenario options are invalid (negative targets, missing duration)
    - A duration string cannot be parsed
    - A threshold expression is malformed or unsupported for its metric
    - A script file cannot be loaded or defines no scenario
    - A named profile does not exist

    Examples:
        SurgeConfigError("Invalid duration", details={"value": "3x"})
        SurgeConfigError("Unknown profile", code="unknown_profile")
    """

    pass


class SetupError(SurgeError):
    """Scenario setup failed.

    Fatal: the run is aborted before any virtual user starts.
    The original exception is available as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        scenario: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if scenario:
            details["scenario"] = scenario
        self.scenario = scenario
        super().__init__(message, code=code, details=details)


class RequestError(SurgeError):
    """A single HTTP request failed at the network level or timed out.

    Non-fatal. Attached to the Response as ``response.error`` and
    recorded as a failed request; the virtual user keeps running.

    Attributes:
        method: HTTP method of the failed request
        url: Target URL
        status_code: HTTP status if the failure came from raise_for_status()
    """

    def __init__(
        self,
        message: str,
        *,
        method: Optional[str] = None,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if method:
            details["method"] = method
        if url:
            details["url"] = url
        if status_code:
            details["status_code"] = status_code

        self.method = method
        self.url = url
        self.status_code = status_code

        super().__init__(message, code=code, details=details)

    @property
    def is_timeout(self) -> bool:
        """True if the request timed out."""
        return self.code == "request_timeout"


class DecodeError(SurgeError):
    """Response body could not be decoded as JSON."""

    def __init__(
        self,
        message: str,
        *,
        body: Optional[bytes] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if body:
            details["body"] = body[:200].decode("utf-8", errors="replace")
        self.body = body
        super().__init__(message, code=code, details=details)


class CheckFailure(SurgeError):
    """One or more check conditions did not hold.

    Attributes:
        failed: Names of the conditions that failed
    """

    def __init__(
        self,
        message: str,
        *,
        failed: Optional[List[str]] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        self.failed = list(failed or [])
        if self.failed:
            details["failed"] = self.failed
        super().__init__(message, code=code, details=details)


class ThresholdFailure(SurgeError):
    """One or more thresholds failed.

    Only surfaced in the final verdict; never raised while load is running.

    Attributes:
        failed: "metric: expression" strings for each failing threshold
    """

    def __init__(
        self,
        message: str,
        *,
        failed: Optional[List[str]] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        self.failed = list(failed or [])
        if self.failed:
            details["failed"] = self.failed
        super().__init__(message, code=code, details=details)


class TeardownError(SurgeError):
    """Scenario teardown failed. Logged, does not affect the verdict."""

    pass


class IterationInterrupted(SurgeError):
    """A virtual user was hard-stopped in the middle of an iteration."""

    pass


__all__ = [
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
