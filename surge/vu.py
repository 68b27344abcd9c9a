"""
Virtual user executor.

Each VirtualUser runs the scenario body repeatedly on its own thread.
Per-iteration errors (failed checks, request errors, exceptions escaping
the body) become metric observations; they never stop the user.

Stopping:
    request_stop()  graceful: finish the current iteration, then exit
    resume()        cancel a pending graceful stop if still running
    interrupt()     hard stop: the next sleep or request raises
                    IterationInterrupted and the user exits
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Iterator, Mapping, Optional

from surge.exceptions import CheckFailure, IterationInterrupted
from surge.http import HttpClient
from surge.metrics.recorder import (
    CHECKS,
    INTERRUPTED_ITERATIONS,
    ITERATION_DURATION,
    ITERATIONS,
    MetricRecorder,
)
from surge.scenario import Scenario

logger = logging.getLogger(__name__)

HttpFactory = Callable[[Optional[threading.Event]], HttpClient]
Condition = Callable[[Any], Any]


class Session:
    """
    Handle passed to setup, every iteration, and teardown.

    Attributes:
        vu_id: Virtual user number (0 for setup and teardown).
        iteration: Iteration number of this virtual user, starting at 0.
        http: HTTP client for this virtual user.
        metrics: The run's MetricRecorder, for custom metrics.
    """

    def __init__(
        self,
        *,
        vu_id: int,
        iteration: int,
        http: HttpClient,
        recorder: MetricRecorder,
        error_metric: Optional[str] = None,
        interrupt: Optional[threading.Event] = None,
    ) -> None:
        self.vu_id = vu_id
        self.iteration = iteration
        self.http = http
        self.metrics = recorder
        self._error_metric = error_metric
        self._interrupt = interrupt

    @property
    def base_url(self) -> str:
        return self.http.base_url

    def check(
        self,
        value: Any,
        conditions: Mapping[str, Condition],
        *,
        tags: Optional[Mapping[str, str]] = None,
        raise_on_fail: bool = False,
    ) -> bool:
        """
        Evaluate named conditions against a value (usually a Response).

        Each condition is recorded into the `checks` rate; a condition that
        raises counts as failed. The scenario's error metric receives one
        observation per call: 1 if any condition failed, else 0.

        Returns:
            True if every condition held.

        Raises:
            CheckFailure: If raise_on_fail is set and a condition failed.
        """
        failed = []
        for name, condition in conditions.items():
            try:
                passed = bool(condition(value))
            except Exception as exc:  # noqa: BLE001
                logger.debug("Check %r raised %s: %s", name, type(exc).__name__, exc)
                passed = False
            if not passed:
                failed.append(name)
            check_tags = {**self.http.tags, "check": name, **(tags or {})}
            self.metrics.record(CHECKS, passed, check_tags)

        if self._error_metric:
            self.metrics.record(self._error_metric, bool(failed), self.http.tags)

        if failed and raise_on_fail:
            raise CheckFailure(f"{len(failed)} check(s) failed", failed=failed)
        return not failed

    def sleep(self, seconds: float) -> None:
        """
        Think time. Suspends only this virtual user.

        Raises:
            IterationInterrupted: If the user is hard-stopped while sleeping.
        """
        if seconds <= 0:
            return
        if self._interrupt is None:
            time.sleep(seconds)
            return
        if self._interrupt.wait(timeout=seconds):
            raise IterationInterrupted("virtual user interrupted during sleep")

    @contextmanager
    def group(self, name: str) -> Iterator[None]:
        """Tag requests and checks inside the block with group "::name"."""
        previous = self.http.tags.get("group")
        self.http.tags["group"] = f"{previous or ''}::{name}"
        try:
            yield
        finally:
            if previous is None:
                self.http.tags.pop("group", None)
            else:
                self.http.tags["group"] = previous


class VUState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class VirtualUser:
    """
    One simulated user running on a dedicated thread.

    Shares nothing mutable with other users except the recorder; `data`
    is the frozen setup output.
    """

    def __init__(
        self,
        vu_id: int,
        scenario: Scenario,
        data: Any,
        recorder: MetricRecorder,
        http_factory: HttpFactory,
        *,
        error_metric: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.vu_id = vu_id
        self._scenario = scenario
        self._data = data
        self._recorder = recorder
        self._http_factory = http_factory
        self._error_metric = error_metric
        self._clock = clock

        self._interrupt = threading.Event()
        self._lock = threading.Lock()
        self._state = VUState.CREATED
        self._iterations = 0
        self._interrupted = 0
        self._in_iteration = False
        self.stop_requested_at: Optional[float] = None
        self._thread = threading.Thread(
            target=self._loop, name=f"surge-vu-{vu_id}", daemon=True
        )

    @property
    def state(self) -> VUState:
        with self._lock:
            return self._state

    @property
    def iterations(self) -> int:
        """Completed iterations."""
        with self._lock:
            return self._iterations

    @property
    def interrupted_iterations(self) -> int:
        with self._lock:
            return self._interrupted

    @property
    def in_iteration(self) -> bool:
        with self._lock:
            return self._in_iteration

    @property
    def stopping(self) -> bool:
        return self.state is VUState.STOPPING

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._state is not VUState.CREATED:
                return
            self._state = VUState.RUNNING
        self._thread.start()

    def request_stop(self) -> bool:
        """Ask the user to exit after its current iteration."""
        with self._lock:
            if self._state in (VUState.CREATED, VUState.RUNNING):
                self._state = VUState.STOPPING
                self.stop_requested_at = self._clock()
                return True
            return False

    def resume(self) -> bool:
        """Cancel a graceful stop. False if the user already exited."""
        with self._lock:
            if self._state is VUState.STOPPING and not self._interrupt.is_set():
                self._state = VUState.RUNNING
                self.stop_requested_at = None
                return True
            return False

    def interrupt(self) -> None:
        """Hard stop: abort the current iteration at its next sleep or request."""
        self.request_stop()
        self._interrupt.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the thread to exit. Returns True if it did."""
        if self._thread.ident is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _should_continue(self) -> bool:
        with self._lock:
            if self._state is VUState.STOPPING or self._interrupt.is_set():
                self._state = VUState.STOPPED
                return False
            return True

    def _loop(self) -> None:
        http: Optional[HttpClient] = None
        iteration = 0
        try:
            http = self._http_factory(self._interrupt)
            while self._should_continue():
                self._run_iteration(http, iteration)
                iteration += 1
        except Exception:
            logger.exception("VU %d crashed", self.vu_id)
            raise
        finally:
            if http is not None:
                http.close()
            with self._lock:
                self._state = VUState.STOPPED
            logger.debug(
                "VU %d stopped after %d iteration(s)", self.vu_id, iteration
            )

    def _run_iteration(self, http: HttpClient, iteration: int) -> None:
        http.reset()
        session = Session(
            vu_id=self.vu_id,
            iteration=iteration,
            http=http,
            recorder=self._recorder,
            error_metric=self._error_metric,
            interrupt=self._interrupt,
        )
        with self._lock:
            self._in_iteration = True
        started = time.perf_counter()
        try:
            self._scenario.run(session, self._data)
        except IterationInterrupted:
            self._recorder.record(INTERRUPTED_ITERATIONS, 1)
            with self._lock:
                self._interrupted += 1
                self._in_iteration = False
            return
        except CheckFailure as exc:
            # Already counted in the error metric by Session.check.
            logger.debug(
                "VU %d iteration %d stopped on failed checks: %s",
                self.vu_id,
                iteration,
                ", ".join(exc.failed),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "VU %d iteration %d raised %s: %s",
                self.vu_id,
                iteration,
                type(exc).__name__,
                exc,
            )
            if self._error_metric:
                self._recorder.record(self._error_metric, 1, http.tags)

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self._recorder.record(ITERATIONS, 1)
        self._recorder.record(ITERATION_DURATION, elapsed_ms)
        with self._lock:
            self._iterations += 1
            self._in_iteration = False
