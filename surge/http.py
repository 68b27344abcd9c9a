"""
HTTP client boundary for virtual users.

Wraps one httpx.Client per virtual user. Network and timeout failures never
raise out of a request: the Response carries status 0 and a RequestError,
so a following status check fails and the iteration carries on.

Every request records http_reqs, http_req_duration (ms), http_req_failed,
data_sent and data_received into the run's MetricRecorder.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx

from surge.exceptions import DecodeError, IterationInterrupted, RequestError
from surge.metrics.recorder import (
    DATA_RECEIVED,
    DATA_SENT,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    MetricRecorder,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
USER_AGENT = "surge/0.1"


@dataclass(frozen=True)
class Response:
    """
    Result of one HTTP request.

    Attributes:
        status: HTTP status code, or 0 when the request never completed.
        headers: Response headers (lower-case names).
        body: Raw response body.
        url: Final request URL.
        method: HTTP method.
        elapsed_ms: Time from send to full body received.
        error: RequestError when status is 0.
    """

    status: int
    headers: Mapping[str, str]
    body: bytes
    url: str
    method: str
    elapsed_ms: float = 0.0
    error: Optional[RequestError] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def decode(self) -> Any:
        """
        Decode the body as JSON.

        Raises:
            DecodeError: If the body is empty or not valid JSON.
        """
        if not self.body:
            raise DecodeError("Response body is empty", details={"url": self.url})
        try:
            return json.loads(self.body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise DecodeError(
                f"Response body is not valid JSON: {exc}", body=self.body
            ) from exc

    def json(self) -> Any:
        return self.decode()

    def raise_for_status(self) -> "Response":
        """Raise RequestError for transport failures and 4xx/5xx statuses."""
        if self.error is not None:
            raise self.error
        if self.status >= 400:
            raise RequestError(
                f"{self.method} {self.url} returned {self.status}",
                method=self.method,
                url=self.url,
                status_code=self.status,
                code="bad_status",
            )
        return self


class HttpClient:
    """
    Per-virtual-user HTTP client.

    Args:
        base_url: Prefix for relative URLs (e.g. "http://localhost:8000").
        recorder: Run recorder that receives request metrics.
        transport: Optional httpx transport (tests use httpx.MockTransport).
        timeout: Per-request timeout in seconds.
        interrupt: Event set when the owning virtual user is hard-stopped.
        headers: Default headers sent with every request.
    """

    def __init__(
        self,
        base_url: str,
        recorder: MetricRecorder,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        interrupt: Optional[threading.Event] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._recorder = recorder
        self._interrupt = interrupt
        self._client = httpx.Client(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
            headers={"User-Agent": USER_AGENT, **(headers or {})},
        )
        self.tags: Dict[str, str] = {}

    @property
    def base_url(self) -> str:
        return str(self._client.base_url)

    def reset(self) -> None:
        """Drop per-iteration state (cookies); the connection pool is kept."""
        self._client.cookies.clear()
        self.tags.pop("group", None)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def get(self, url: str, **kwargs: Any) -> Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> Response:
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs: Any) -> Response:
        return self.request("PUT", url, **kwargs)

    def patch(self, url: str, **kwargs: Any) -> Response:
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs: Any) -> Response:
        return self.request("DELETE", url, **kwargs)

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        data: Any = None,
        name: Optional[str] = None,
        tags: Optional[Mapping[str, str]] = None,
    ) -> Response:
        """
        Send one request and record its metrics.

        Args:
            method: HTTP method.
            url: Absolute URL or path relative to base_url.
            headers: Extra headers for this request.
            params: Query string parameters.
            json: Body to send as JSON.
            data: Raw or form body.
            name: Metric tag grouping dynamic URLs; defaults to the URL path.
            tags: Extra metric tags.

        Raises:
            IterationInterrupted: If the virtual user was hard-stopped.
        """
        if self._interrupt is not None and self._interrupt.is_set():
            raise IterationInterrupted("virtual user interrupted before request")

        method = method.upper()
        try:
            request = self._client.build_request(
                method, url, headers=headers, params=params, json=json, data=data
            )
        except httpx.InvalidURL as exc:
            error = RequestError(
                f"Invalid URL: {exc}", method=method, url=url, code="invalid_url"
            )
            return self._failed(method, url, error, 0.0, name or url, tags)

        full_url = str(request.url)
        sent = len(request.content)
        started = time.perf_counter()
        try:
            raw = self._client.send(request)
        except httpx.TimeoutException as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            error = RequestError(
                f"Request timed out: {exc}",
                method=method,
                url=full_url,
                code="request_timeout",
            )
            return self._failed(method, full_url, error, elapsed_ms, name, tags, sent)
        except httpx.TransportError as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            error = RequestError(
                f"Request failed: {exc}",
                method=method,
                url=full_url,
                code="request_failed",
            )
            return self._failed(method, full_url, error, elapsed_ms, name, tags, sent)
        elapsed_ms = (time.perf_counter() - started) * 1000.0

        response = Response(
            status=raw.status_code,
            headers={k: v for k, v in raw.headers.items()},
            body=raw.content,
            url=full_url,
            method=method,
            elapsed_ms=elapsed_ms,
        )
        self._record(response, name or request.url.path, tags, sent)
        return response

    def _failed(
        self,
        method: str,
        url: str,
        error: RequestError,
        elapsed_ms: float,
        name: Optional[str],
        tags: Optional[Mapping[str, str]],
        sent: int = 0,
    ) -> Response:
        logger.debug("Request error: %s %s: %s", method, url, error.message)
        response = Response(
            status=0,
            headers={},
            body=b"",
            url=url,
            method=method,
            elapsed_ms=elapsed_ms,
            error=error,
        )
        if name is None:
            name = httpx.URL(url).path if "://" in url else url
        self._record(response, name, tags, sent)
        return response

    def _record(
        self,
        response: Response,
        name: str,
        tags: Optional[Mapping[str, str]],
        sent: int,
    ) -> None:
        metric_tags = {
            **self.tags,
            "method": response.method,
            "name": name,
            "status": str(response.status),
            **(tags or {}),
        }
        failed = response.status == 0 or response.status >= 400
        self._recorder.record(HTTP_REQS, 1, metric_tags)
        self._recorder.record(HTTP_REQ_DURATION, response.elapsed_ms, metric_tags)
        self._recorder.record(HTTP_REQ_FAILED, failed, metric_tags)
        self._recorder.record(DATA_SENT, sent, metric_tags)
        self._recorder.record(DATA_RECEIVED, len(response.body), metric_tags)
