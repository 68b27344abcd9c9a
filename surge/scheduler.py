"""
Stage scheduler: drives the virtual user population over time.

State machine over the stage sequence:

    IDLE -> RAMPING(0) -> HOLDING(0) -> RAMPING(1) -> ... -> DRAINING -> DONE

Every tick the target population is the linear interpolation between the
previous stage's end population and the current stage's target, floored so
the active count never exceeds it. Scaling down asks the most recently
started users to stop after their current iteration; users that do not
finish within the graceful ramp-down window are interrupted. When the last
stage ends, every user is asked to stop and stragglers are interrupted
after the graceful stop window.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from surge.metrics.recorder import VUS, VUS_MAX, MetricRecorder
from surge.models import Stage
from surge.vu import VirtualUser, VUState

logger = logging.getLogger(__name__)

# Guards floor() against float noise such as 9.999999999 for an exact 10.
_EPSILON = 1e-9


class SchedulerState(str, Enum):
    IDLE = "idle"
    RAMPING = "ramping"
    HOLDING = "holding"
    DRAINING = "draining"
    DONE = "done"


def total_duration(stages: Sequence[Stage]) -> float:
    return sum(stage.duration for stage in stages)


def stage_at(
    stages: Sequence[Stage], elapsed: float, start_vus: int = 0
) -> Tuple[Optional[int], SchedulerState]:
    """
    Locate the stage active at `elapsed` seconds.

    Returns:
        (stage index, RAMPING or HOLDING), or (None, DRAINING) once every
        stage has elapsed.
    """
    previous = start_vus
    offset = 0.0
    for index, stage in enumerate(stages):
        if elapsed < offset + stage.duration:
            state = (
                SchedulerState.HOLDING
                if stage.target == previous
                else SchedulerState.RAMPING
            )
            return index, state
        previous = stage.target
        offset += stage.duration
    return None, SchedulerState.DRAINING


def target_at(stages: Sequence[Stage], elapsed: float, start_vus: int = 0) -> int:
    """
    Target concurrency at `elapsed` seconds into the run.

    Linear interpolation from the previous stage's end population to the
    current stage's target, floored. Before the run it is `start_vus`;
    after the last stage it is the last stage's target.

    Example:
        stages 30s->20, 60s->20, 30s->0: t=15 -> 10, t=45 -> 20, t=105 -> 10
    """
    if elapsed <= 0:
        return start_vus
    previous = start_vus
    offset = 0.0
    for stage in stages:
        end = offset + stage.duration
        if elapsed < end:
            progress = (elapsed - offset) / stage.duration
            value = previous + (stage.target - previous) * progress
            return max(int(math.floor(value + _EPSILON)), 0)
        previous = stage.target
        offset = end
    return previous


@dataclass(frozen=True)
class TickInfo:
    """What the scheduler did on one tick."""

    elapsed: float
    target: int
    active: int
    draining: int
    state: SchedulerState
    stage_index: Optional[int]


@dataclass(frozen=True)
class SchedulerStats:
    """Outcome of a scheduler run."""

    elapsed_seconds: float
    spawned: int
    vus_max: int
    aborted: bool
    abort_reason: Optional[str]
    interrupted_on_stop: int
    stragglers: int


class StageScheduler:
    """
    Runs the stage plan, spawning and stopping virtual users.

    Args:
        start_vus: Population at t=0.
        stages: Ordered ramp stages.
        vu_factory: Builds (but does not start) the user with the given id.
        recorder: Receives the vus / vus_max gauges.
        graceful_ramp_down: Seconds a user stopped by a ramp-down may take
            to finish its iteration before it is interrupted.
        graceful_stop: Same window at the end of the run.
        tick_seconds: Scheduling resolution.
        join_timeout: How long to wait for interrupted threads to exit.
        on_tick: Called after every scheduling tick.
    """

    def __init__(
        self,
        start_vus: int,
        stages: Sequence[Stage],
        vu_factory: Callable[[int], VirtualUser],
        recorder: MetricRecorder,
        *,
        graceful_ramp_down: float = 30.0,
        graceful_stop: float = 30.0,
        tick_seconds: float = 0.1,
        join_timeout: float = 5.0,
        on_tick: Optional[Callable[[TickInfo], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not stages:
            raise ValueError("at least one stage is required")
        if tick_seconds <= 0:
            raise ValueError("tick_seconds must be > 0")
        self._start_vus = start_vus
        self._stages = tuple(stages)
        self._vu_factory = vu_factory
        self._recorder = recorder
        self._graceful_ramp_down = graceful_ramp_down
        self._graceful_stop = graceful_stop
        self._tick = tick_seconds
        self._join_timeout = join_timeout
        self._on_tick = on_tick
        self._clock = clock

        self._active: List[VirtualUser] = []
        self._draining: List[VirtualUser] = []
        self._next_id = 1
        self._vus_max = 0

        self._state = SchedulerState.IDLE
        self._stage_index: Optional[int] = None
        self._state_lock = threading.Lock()
        self._abort = threading.Event()
        self._abort_reason: Optional[str] = None

    @property
    def state(self) -> SchedulerState:
        with self._state_lock:
            return self._state

    @property
    def stage_index(self) -> Optional[int]:
        with self._state_lock:
            return self._stage_index

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def draining_count(self) -> int:
        return len(self._draining)

    @property
    def duration(self) -> float:
        return total_duration(self._stages)

    def abort(self, reason: str) -> None:
        """End the run early; users drain as they do at a normal end."""
        if not self._abort.is_set():
            self._abort_reason = reason
            logger.warning("Run aborted: %s", reason)
            self._abort.set()

    def run(self) -> SchedulerStats:
        """Block until every stage has elapsed and all users have stopped."""
        if self.state is not SchedulerState.IDLE:
            raise RuntimeError("scheduler can only run once")
        started = self._clock()
        end = self.duration
        logger.info(
            "Scheduler starting: %d stage(s), %.1fs, start_vus=%d",
            len(self._stages),
            end,
            self._start_vus,
        )
        try:
            while not self._abort.is_set():
                elapsed = self._clock() - started
                if elapsed >= end:
                    break
                self._tick_once(elapsed)
                self._abort.wait(self._tick)
        finally:
            interrupted, stragglers = self._drain()

        elapsed = self._clock() - started
        self._set_state(SchedulerState.DONE, None)
        logger.info(
            "Scheduler done in %.1fs: spawned=%d vus_max=%d",
            elapsed,
            self._next_id - 1,
            self._vus_max,
        )
        return SchedulerStats(
            elapsed_seconds=elapsed,
            spawned=self._next_id - 1,
            vus_max=self._vus_max,
            aborted=self._abort.is_set(),
            abort_reason=self._abort_reason,
            interrupted_on_stop=interrupted,
            stragglers=stragglers,
        )

    def _tick_once(self, elapsed: float) -> None:
        index, state = stage_at(self._stages, elapsed, self._start_vus)
        self._set_state(state, index)
        target = target_at(self._stages, elapsed, self._start_vus)

        self._reap()
        self._scale_to(target)
        self._enforce_ramp_down_grace()
        self._update_gauges()

        if self._on_tick is not None:
            self._on_tick(
                TickInfo(
                    elapsed=elapsed,
                    target=target,
                    active=len(self._active),
                    draining=len(self._draining),
                    state=state,
                    stage_index=index,
                )
            )

    def _set_state(self, state: SchedulerState, index: Optional[int]) -> None:
        with self._state_lock:
            if state is self._state and index == self._stage_index:
                return
            self._state = state
            self._stage_index = index
        if index is not None:
            logger.info(
                "Stage %d/%d: %s to %d VU(s)",
                index + 1,
                len(self._stages),
                state.value,
                self._stages[index].target,
            )
        else:
            logger.info("Scheduler %s", state.value)

    def _scale_to(self, target: int) -> None:
        excess = len(self._active) - target
        if excess > 0:
            # Most recently started users leave first.
            for vu in self._active[-excess:]:
                vu.request_stop()
                self._draining.append(vu)
            del self._active[-excess:]
            logger.debug("Ramping down %d VU(s), target=%d", excess, target)
            return

        missing = target - len(self._active)
        for vu in reversed(list(self._draining)):
            if missing <= 0:
                break
            if vu.resume():
                self._draining.remove(vu)
                self._active.append(vu)
                missing -= 1
        for _ in range(missing):
            vu = self._vu_factory(self._next_id)
            self._next_id += 1
            vu.start()
            self._active.append(vu)

    def _enforce_ramp_down_grace(self) -> None:
        now = self._clock()
        for vu in self._draining:
            requested = vu.stop_requested_at
            if requested is not None and now - requested >= self._graceful_ramp_down:
                if vu.is_alive():
                    logger.debug(
                        "VU %d exceeded graceful ramp-down, interrupting", vu.vu_id
                    )
                vu.interrupt()

    def _reap(self) -> None:
        self._draining = [vu for vu in self._draining if self._alive(vu)]
        self._active = [vu for vu in self._active if self._alive(vu)]

    @staticmethod
    def _alive(vu: VirtualUser) -> bool:
        return vu.is_alive() or vu.state is not VUState.STOPPED

    def _update_gauges(self) -> None:
        current = len(self._active) + len(self._draining)
        self._vus_max = max(self._vus_max, current)
        self._recorder.record(VUS, current)
        self._recorder.record(VUS_MAX, self._vus_max)

    def _drain(self) -> Tuple[int, int]:
        """Stop every user: graceful window first, then interrupt and join."""
        self._set_state(SchedulerState.DRAINING, None)
        for vu in self._active:
            vu.request_stop()
            self._draining.append(vu)
        self._active = []

        deadline = self._clock() + self._graceful_stop
        while self._clock() < deadline:
            self._reap()
            self._update_gauges()
            if not self._draining:
                break
            time.sleep(min(self._tick, max(deadline - self._clock(), 0.0)))
        self._reap()

        interrupted = 0
        for vu in self._draining:
            vu.interrupt()
            interrupted += 1
        if interrupted:
            logger.warning(
                "%d VU(s) still running after graceful stop, interrupting", interrupted
            )

        stragglers = 0
        for vu in self._draining:
            if not vu.join(self._join_timeout):
                stragglers += 1
        if stragglers:
            logger.warning("%d VU thread(s) did not exit in time", stragglers)
        self._draining = []
        self._recorder.record(VUS, 0)
        return interrupted, stragglers
