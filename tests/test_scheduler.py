"""Tests for the stage scheduler: interpolation, scaling, drain."""

import threading

import pytest

from surge.models import Stage
from surge.scenario import FunctionScenario
from surge.scheduler import (
    SchedulerState,
    StageScheduler,
    TickInfo,
    stage_at,
    target_at,
    total_duration,
)
from surge.vu import VirtualUser
from tests.support.mock_api import MockApi

DEFAULT_STAGES = [
    Stage(duration="30s", target=20),
    Stage(duration="1m", target=20),
    Stage(duration="30s", target=0),
]


def vu_factory(recorder, run):
    api = MockApi()
    scenario = FunctionScenario(run, options={"vus": 1, "duration": "1s"})

    def build(vu_id: int) -> VirtualUser:
        return VirtualUser(
            vu_id,
            scenario,
            None,
            recorder,
            lambda interrupt: api.client(recorder, interrupt=interrupt),
        )

    return build


def sleeper(seconds: float):
    def run(session, data):
        session.sleep(seconds)

    return run


class TestTargetAt:
    def test_ramp_up(self):
        assert target_at(DEFAULT_STAGES, 0) == 0
        assert target_at(DEFAULT_STAGES, 15) == 10
        assert target_at(DEFAULT_STAGES, 29.9) == 19

    def test_hold(self):
        assert target_at(DEFAULT_STAGES, 30) == 20
        assert target_at(DEFAULT_STAGES, 45) == 20
        assert target_at(DEFAULT_STAGES, 89.9) == 20

    def test_ramp_down_is_linear(self):
        assert target_at(DEFAULT_STAGES, 90) == 20
        assert target_at(DEFAULT_STAGES, 100) == 13
        assert target_at(DEFAULT_STAGES, 105) == 10
        assert target_at(DEFAULT_STAGES, 119.99) == 0
        assert target_at(DEFAULT_STAGES, 120) == 0

    def test_start_vus(self):
        stages = [Stage(duration=10, target=0)]
        assert target_at(stages, 0, start_vus=10) == 10
        assert target_at(stages, 5, start_vus=10) == 5

    def test_never_exceeds_interpolated_value(self):
        stages = [Stage(duration=7, target=13), Stage(duration=3, target=2)]
        for tenth in range(0, 101):
            t = tenth / 10
            if t < 7:
                exact = 13 * t / 7
            else:
                exact = 13 + (2 - 13) * (t - 7) / 3
            assert target_at(stages, t) <= exact + 1e-9

    def test_after_last_stage(self):
        stages = [Stage(duration=1, target=5)]
        assert target_at(stages, 50) == 5


class TestStageAt:
    def test_states(self):
        assert stage_at(DEFAULT_STAGES, 10) == (0, SchedulerState.RAMPING)
        assert stage_at(DEFAULT_STAGES, 60) == (1, SchedulerState.HOLDING)
        assert stage_at(DEFAULT_STAGES, 100) == (2, SchedulerState.RAMPING)
        assert stage_at(DEFAULT_STAGES, 121) == (None, SchedulerState.DRAINING)

    def test_total_duration(self):
        assert total_duration(DEFAULT_STAGES) == 120.0


class TestStageScheduler:
    def test_rejects_empty_plan(self, recorder):
        with pytest.raises(ValueError):
            StageScheduler(0, [], vu_factory(recorder, sleeper(0.01)), recorder)

    def test_active_never_exceeds_target(self, recorder):
        ticks = []
        stages = [
            Stage(duration=0.3, target=4),
            Stage(duration=0.3, target=4),
            Stage(duration=0.3, target=0),
        ]
        scheduler = StageScheduler(
            0,
            stages,
            vu_factory(recorder, sleeper(0.02)),
            recorder,
            graceful_ramp_down=1,
            graceful_stop=1,
            tick_seconds=0.02,
            on_tick=ticks.append,
        )
        stats = scheduler.run()

        assert ticks
        assert all(isinstance(t, TickInfo) for t in ticks)
        assert all(t.active <= t.target for t in ticks)
        assert max(t.active for t in ticks) == 4
        assert {t.state for t in ticks} >= {SchedulerState.RAMPING, SchedulerState.HOLDING}
        assert scheduler.state is SchedulerState.DONE
        assert stats.vus_max == 4
        assert stats.spawned >= 4
        assert not stats.aborted
        assert recorder.snapshot()["vus"].last == 0

    def test_graceful_drain_completes_iterations(self, recorder):
        started = []
        lock = threading.Lock()

        def run(session, data):
            with lock:
                started.append(session.vu_id)
            session.sleep(0.3)

        scheduler = StageScheduler(
            3,
            [Stage(duration=0.1, target=3)],
            vu_factory(recorder, run),
            recorder,
            graceful_stop=2,
            tick_seconds=0.02,
        )
        stats = scheduler.run()

        snap = recorder.snapshot()
        assert stats.interrupted_on_stop == 0
        assert snap["interrupted_iterations"].count == 0
        # Every user active at drain start finished its iteration.
        assert snap["iterations"].total >= 3
        assert snap["iterations"].total == len(started)

    def test_graceful_stop_timeout_interrupts(self, recorder):
        scheduler = StageScheduler(
            2,
            [Stage(duration=0.1, target=2)],
            vu_factory(recorder, sleeper(10)),
            recorder,
            graceful_stop=0.1,
            tick_seconds=0.02,
            join_timeout=2,
        )
        stats = scheduler.run()

        assert stats.interrupted_on_stop == 2
        assert stats.stragglers == 0
        snap = recorder.snapshot()
        assert snap["interrupted_iterations"].total == 2
        assert snap["iterations"].count == 0

    def test_ramp_down_grace_interrupts_slow_users(self, recorder):
        stages = [Stage(duration=0.1, target=2), Stage(duration=0.5, target=0)]
        scheduler = StageScheduler(
            2,
            stages,
            vu_factory(recorder, sleeper(10)),
            recorder,
            graceful_ramp_down=0.05,
            graceful_stop=5,
            tick_seconds=0.02,
        )
        stats = scheduler.run()

        # Interrupted by the ramp-down grace, not by the end-of-run stop.
        assert stats.interrupted_on_stop == 0
        assert recorder.snapshot()["interrupted_iterations"].total == 2

    def test_mid_run_ramp_down_lets_iterations_finish(self, recorder):
        stages = [Stage(duration=0.2, target=3), Stage(duration=0.2, target=0)]
        scheduler = StageScheduler(
            0,
            stages,
            vu_factory(recorder, sleeper(0.15)),
            recorder,
            graceful_ramp_down=5,
            graceful_stop=5,
            tick_seconds=0.02,
        )
        stats = scheduler.run()

        snap = recorder.snapshot()
        assert stats.vus_max == 3
        assert stats.interrupted_on_stop == 0
        assert snap["interrupted_iterations"].total == 0
        assert snap["iterations"].total >= 3

    def test_abort_ends_run_early(self, recorder):
        scheduler = None

        def on_tick(info):
            if info.elapsed > 0.1:
                scheduler.abort("stop now")

        scheduler = StageScheduler(
            1,
            [Stage(duration=30, target=1)],
            vu_factory(recorder, sleeper(0.01)),
            recorder,
            graceful_stop=1,
            tick_seconds=0.02,
            on_tick=on_tick,
        )
        stats = scheduler.run()

        assert stats.aborted
        assert stats.abort_reason == "stop now"
        assert stats.elapsed_seconds < 5

    def test_runs_only_once(self, recorder):
        scheduler = StageScheduler(
            0,
            [Stage(duration=0.05, target=0)],
            vu_factory(recorder, sleeper(0.01)),
            recorder,
            tick_seconds=0.01,
        )
        scheduler.run()
        with pytest.raises(RuntimeError):
            scheduler.run()
