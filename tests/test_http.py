"""Tests for the HTTP client boundary: responses, failures, recorded metrics."""

import json
import threading

import httpx
import pytest

from surge.exceptions import DecodeError, IterationInterrupted, RequestError
from surge.http import HttpClient, Response
from tests.support.mock_api import BASE_URL, MockApi


def raising(exc_type):
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc_type("boom", request=request)

    return handler


class TestResponse:
    def make(self, status=200, body=b"", **kwargs) -> Response:
        return Response(
            status=status, headers={}, body=body, url=BASE_URL, method="GET", **kwargs
        )

    def test_decode_json(self):
        res = self.make(body=b'{"email": "a@b.c"}')
        assert res.decode() == {"email": "a@b.c"}
        assert res.json() == {"email": "a@b.c"}

    def test_decode_invalid(self):
        with pytest.raises(DecodeError) as exc_info:
            self.make(body=b"<html>").decode()
        assert exc_info.value.body == b"<html>"

    def test_decode_empty(self):
        with pytest.raises(DecodeError):
            self.make(body=b"").json()

    def test_ok(self):
        assert self.make(status=204).ok
        assert self.make(status=302).ok
        assert not self.make(status=404).ok
        assert not self.make(status=0).ok

    def test_raise_for_status(self):
        assert self.make(status=200).raise_for_status().status == 200
        with pytest.raises(RequestError) as exc_info:
            self.make(status=503).raise_for_status()
        assert exc_info.value.status_code == 503
        assert exc_info.value.code == "bad_status"


class TestHttpClient:
    def test_get_relative_url(self, recorder):
        api = MockApi()
        with api.client(recorder) as http:
            res = http.get("/health")
        assert res.status == 200
        assert res.json() == {"status": "ok"}
        assert res.url == f"{BASE_URL}/health"
        assert res.elapsed_ms >= 0
        assert api.calls == [("GET", "/health")]

    def test_post_json_and_headers(self, recorder):
        seen = {}

        def login(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"token": "t"})

        api = MockApi(routes={"/auth/login": login})
        with api.client(recorder) as http:
            res = http.post(
                "/auth/login",
                json={"email": "a@b.c", "password": "x"},
                headers={"Authorization": "Bearer abc"},
            )
        assert res.json() == {"token": "t"}
        assert seen == {"body": {"email": "a@b.c", "password": "x"}, "auth": "Bearer abc"}
        snap = recorder.snapshot()
        assert snap["data_sent"].total > 0

    def test_metrics_recorded_with_tags(self, recorder):
        key = recorder.add_submetric("http_reqs{method:GET,name:/health,status:200}")
        api = MockApi()
        with api.client(recorder) as http:
            http.get("/health")
            http.get("/api/courses")

        snap = recorder.snapshot()
        assert snap["http_reqs"].total == 2
        assert snap[key].total == 1
        assert snap["http_req_duration"].count == 2
        assert snap["http_req_failed"].rate == 0.0
        assert snap["data_received"].total > 0

    def test_error_status_counts_as_failed(self, recorder):
        api = MockApi(fail_requests=[2])
        with api.client(recorder) as http:
            assert http.get("/health").status == 200
            res = http.get("/health")
        assert res.status == 500
        assert res.error is None
        assert recorder.snapshot()["http_req_failed"].rate == pytest.approx(0.5)

    def test_connection_error_gives_status_zero(self, recorder):
        http = HttpClient(
            BASE_URL, recorder, transport=httpx.MockTransport(raising(httpx.ConnectError))
        )
        res = http.get("/health")
        http.close()

        assert res.status == 0
        assert isinstance(res.error, RequestError)
        assert res.error.code == "request_failed"
        assert not res.error.is_timeout
        with pytest.raises(RequestError):
            res.raise_for_status()

        snap = recorder.snapshot()
        assert snap["http_reqs"].total == 1
        assert snap["http_req_failed"].rate == 1.0

    def test_timeout(self, recorder):
        http = HttpClient(
            BASE_URL, recorder, transport=httpx.MockTransport(raising(httpx.ReadTimeout))
        )
        res = http.get("/slow")
        http.close()
        assert res.status == 0
        assert res.error.is_timeout

    def test_custom_name_tag(self, recorder):
        key = recorder.add_submetric("http_req_duration{name:/api/courses/:id}")
        api = MockApi(routes={"/api/courses/7": lambda r: httpx.Response(200, json={})})
        with api.client(recorder) as http:
            http.get("/api/courses/7", name="/api/courses/:id")
        assert recorder.snapshot()[key].count == 1

    def test_group_tag(self, recorder):
        key = recorder.add_submetric("http_reqs{group:::public}")
        api = MockApi()
        with api.client(recorder) as http:
            http.tags["group"] = "::public"
            http.get("/health")
            http.reset()
            http.get("/health")
        assert recorder.snapshot()[key].total == 1

    def test_reset_clears_cookies(self, recorder):
        cookies = []

        def login(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"Set-Cookie": "session=abc; Path=/"})

        def echo(request: httpx.Request) -> httpx.Response:
            cookies.append(request.headers.get("Cookie"))
            return httpx.Response(200)

        api = MockApi(routes={"/auth/login": login, "/echo": echo})
        with api.client(recorder) as http:
            http.post("/auth/login")
            http.get("/echo")
            http.reset()
            http.get("/echo")
        assert cookies == ["session=abc", None]

    def test_interrupted_client_refuses_requests(self, recorder):
        interrupt = threading.Event()
        api = MockApi()
        with api.client(recorder, interrupt=interrupt) as http:
            http.get("/health")
            interrupt.set()
            with pytest.raises(IterationInterrupted):
                http.get("/health")
        assert len(api.calls) == 1
        assert recorder.snapshot()["http_reqs"].total == 1
