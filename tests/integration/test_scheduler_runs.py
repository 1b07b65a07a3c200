"""
Integration tests for scenario runners with real worker threads.

Timings are short (tenths of a second) and assertions allow for thread
scheduling jitter.
"""

from __future__ import annotations

import itertools
import random
import threading
import time

import pytest

from loadtest_app.models import ScenarioDefinition, ScenarioKind, Stage
from loadtest_app.scheduler import ScenarioRunner, ScenarioScheduler, ScenarioState, ramp_target


pytestmark = pytest.mark.integration

JITTER = 0.5


class _CountingWorkload:
    """Thread-safe workload that sleeps briefly and counts iterations."""

    def __init__(self, pause: float = 0.005):
        self.pause = pause
        self.started = 0
        self.finished = 0
        self._lock = threading.Lock()

    def __call__(self) -> None:
        with self._lock:
            self.started += 1
        time.sleep(self.pause)
        with self._lock:
            self.finished += 1


def _runner(definition, workload, **kwargs):
    kwargs.setdefault("tick_seconds", 0.02)
    return ScenarioRunner(definition, workload, rng=random.Random(42), **kwargs)


def test_constant_scenario_holds_vus_for_its_duration():
    # Arrange
    workload = _CountingWorkload()
    definition = ScenarioDefinition(
        name="steady",
        kind=ScenarioKind.CONSTANT,
        vus=3,
        duration=0.3,
        graceful_stop=0.0,
        think_time=(0.0, 0.01),
    )
    runner = _runner(definition, workload)

    # Act
    began = time.monotonic()
    runner.start()
    time.sleep(0.1)
    active_mid_run = runner.active_vus
    assert runner.join(timeout=5)
    elapsed = time.monotonic() - began

    # Assert
    assert active_mid_run == 3
    assert runner.peak_vus == 3
    assert runner.state is ScenarioState.STOPPED
    assert workload.started > 3
    assert 0.3 <= elapsed < 0.3 + JITTER
    assert runner.active_vus == 0


def test_runner_cannot_start_twice():
    runner = _runner(
        ScenarioDefinition(name="once", kind=ScenarioKind.CONSTANT, vus=1, duration=0.05, graceful_stop=0.0),
        _CountingWorkload(),
    )
    runner.start()
    runner.join(timeout=5)

    with pytest.raises(RuntimeError):
        runner.start()


def test_ramping_scenario_follows_its_envelope():
    # Arrange
    definition = ScenarioDefinition(
        name="spike",
        kind=ScenarioKind.RAMPING,
        start_vus=1,
        stages=(Stage(0.4, 6), Stage(0.3, 6), Stage(0.4, 0)),
        graceful_ramp_down=1.0,
        graceful_stop=1.0,
        think_time=(0.0, 0.01),
    )
    runner = _runner(definition, _CountingWorkload())
    samples: list[tuple[float, int]] = []

    # Act
    runner.start()
    while runner.started_at is None:
        time.sleep(0.001)
    while runner.state is ScenarioState.RUNNING:
        samples.append((time.monotonic() - runner.started_at, runner.active_vus))
        time.sleep(0.01)
    assert runner.join(timeout=5)

    # Assert
    assert samples
    window = 0.15
    for elapsed, active in samples:
        expected = [
            ramp_target(definition.start_vus, definition.stages, elapsed - offset)
            for offset in (0.0, window / 3, 2 * window / 3, window)
        ]
        assert min(expected) - 1 <= active <= max(expected) + 1
    assert runner.peak_vus <= definition.max_vus
    assert max(active for _, active in samples) >= 5


def test_ramp_back_up_waits_for_retiring_users():
    # Arrange
    definition = ScenarioDefinition(
        name="dip",
        kind=ScenarioKind.RAMPING,
        start_vus=4,
        stages=(Stage(0.05, 0), Stage(0.05, 4), Stage(0.3, 4)),
        graceful_ramp_down=5.0,
        graceful_stop=1.0,
        think_time=(0.0, 0.0),
    )
    runner = _runner(definition, _CountingWorkload(pause=0.4))
    live_samples: list[int] = []

    # Act
    runner.start()
    while runner.started_at is None:
        time.sleep(0.001)
    while runner.state is ScenarioState.RUNNING:
        live_samples.append(runner.live_vus)
        time.sleep(0.005)
    assert runner.join(timeout=5)

    # Assert
    assert live_samples
    assert max(live_samples) <= definition.max_vus
    assert runner.peak_vus <= definition.max_vus


def test_graceful_stop_lets_in_flight_iterations_finish():
    # Arrange
    workload = _CountingWorkload(pause=0.2)
    definition = ScenarioDefinition(
        name="patient",
        kind=ScenarioKind.CONSTANT,
        vus=2,
        duration=0.1,
        graceful_stop=2.0,
        think_time=(0.0, 0.0),
    )
    runner = _runner(definition, workload)

    # Act
    runner.start()
    assert runner.join(timeout=5)

    # Assert
    assert runner.abandoned_vus == 0
    assert workload.started == workload.finished
    assert runner.live_vus == 0
    assert runner.iterations == workload.finished


def test_users_past_graceful_stop_are_abandoned():
    # Arrange
    release = threading.Event()
    definition = ScenarioDefinition(
        name="stuck",
        kind=ScenarioKind.CONSTANT,
        vus=2,
        duration=0.1,
        graceful_stop=0.1,
    )
    runner = _runner(definition, lambda: release.wait(5))

    # Act
    began = time.monotonic()
    runner.start()
    finished = runner.join(timeout=5)
    elapsed = time.monotonic() - began
    release.set()

    # Assert
    assert finished
    assert runner.abandoned_vus == 2
    assert elapsed < 0.2 + JITTER


def test_retiring_users_are_abandoned_after_ramp_down_window():
    # Arrange
    release = threading.Event()
    definition = ScenarioDefinition(
        name="down",
        kind=ScenarioKind.RAMPING,
        start_vus=4,
        stages=(Stage(0.3, 0),),
        graceful_ramp_down=0.0,
        graceful_stop=0.0,
    )
    runner = _runner(definition, lambda: release.wait(5))

    # Act
    runner.start()
    finished = runner.join(timeout=5)
    release.set()

    # Assert
    assert finished
    assert runner.peak_vus == 4
    assert runner.abandoned_vus == 4


def test_stop_closes_the_window_early():
    definition = ScenarioDefinition(
        name="long",
        kind=ScenarioKind.CONSTANT,
        vus=2,
        duration=30.0,
        graceful_stop=1.0,
        think_time=(0.0, 0.01),
    )
    runner = _runner(definition, _CountingWorkload())
    runner.start()
    time.sleep(0.05)

    runner.stop()

    assert runner.join(timeout=3)
    assert runner.state is ScenarioState.STOPPED


def test_failing_iterations_do_not_stop_the_user(caplog):
    # Arrange
    calls = itertools.count()

    def broken() -> None:
        next(calls)
        raise ValueError("boom")

    definition = ScenarioDefinition(
        name="broken",
        kind=ScenarioKind.CONSTANT,
        vus=1,
        duration=0.1,
        graceful_stop=1.0,
        think_time=(0.0, 0.01),
    )
    runner = _runner(definition, broken)

    # Act
    runner.start()
    runner.join(timeout=5)

    # Assert
    assert runner.iterations > 1
    assert "boom" in caplog.text


def test_scheduler_runs_scenarios_concurrently():
    # Arrange
    workloads = {"login": _CountingWorkload(), "browse": _CountingWorkload()}
    definitions = [
        ScenarioDefinition(name="a", kind=ScenarioKind.CONSTANT, vus=2, duration=0.3, graceful_stop=1.0),
        ScenarioDefinition(
            name="b", kind=ScenarioKind.CONSTANT, exec="browse", vus=2, duration=0.3, graceful_stop=1.0
        ),
    ]
    scheduler = ScenarioScheduler.from_definitions(definitions, workloads, tick_seconds=0.02)

    # Act
    began = time.monotonic()
    scheduler.run()
    elapsed = time.monotonic() - began

    # Assert
    assert scheduler.done
    assert workloads["login"].started > 0
    assert workloads["browse"].started > 0
    assert elapsed < 0.6 + JITTER


def test_scheduler_wait_surfaces_controller_failure():
    # Arrange
    calls = itertools.count()

    def flaky_clock() -> float:
        if next(calls) == 1:
            raise OSError("clock unavailable")
        return time.monotonic()

    definition = ScenarioDefinition(name="ramp", kind=ScenarioKind.RAMPING, stages=(Stage(0.2, 0),))
    scheduler = ScenarioScheduler([_runner(definition, _CountingWorkload(), clock=flaky_clock)])

    # Act / Assert
    with pytest.raises(RuntimeError) as excinfo:
        scheduler.run()
    assert isinstance(excinfo.value.__cause__, OSError)
