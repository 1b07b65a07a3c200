"""
Scenario scheduler: turns scenario definitions into live virtual users.

Each virtual user is one thread that repeatedly runs the scenario's
workload, pausing for a random think time between iterations.  Users
cooperate only through the shared metric sink and their own stop
signal, which is checked at the top of every iteration and while
sleeping, never in the middle of a request.

Scenario lifecycle::

    PENDING -> RUNNING -> DRAINING -> STOPPED

- **constant** scenarios hold ``vus`` users for ``duration`` seconds.
- **ramping** scenarios start at ``start_vus`` and move linearly towards
  each stage's target over the stage's duration.  Growing spawns users
  once retiring ones have exited; shrinking signals the most recently
  spawned users, which finish their current iteration and exit.
  Retiring users that outlive ``graceful_ramp_down`` are abandoned.

When the run window closes every user is signalled and gets
``graceful_stop`` seconds to finish.  Python threads cannot be killed,
so users still running after that are abandoned: they are daemon
threads, their in-flight request is bounded by the request timeout, and
the engine freezes the metric sink so their late writes are dropped.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from typing import Any

from .errors import ConfigurationError
from .models import ScenarioDefinition, ScenarioKind, Stage

logger = logging.getLogger(__name__)

Workload = Callable[[], Any]


class ScenarioState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


def ramp_target(start_vus: int, stages: Sequence[Stage], elapsed: float) -> int:
    """
    Concurrency a ramping scenario should hold *elapsed* seconds in.

    Interpolates linearly from the previous stage's target (or
    *start_vus*) to the current stage's target and rounds to the nearest
    whole user.  Past the last stage the final target is returned.
    """
    previous = start_vus
    remaining = max(0.0, elapsed)
    for stage in stages:
        if remaining < stage.duration:
            fraction = remaining / stage.duration
            return round(previous + (stage.target - previous) * fraction)
        remaining -= stage.duration
        previous = stage.target
    return previous


class VirtualUser:
    """One worker thread running workload iterations until told to stop."""

    def __init__(
        self,
        vu_id: int,
        scenario: str,
        workload: Workload,
        think_time: tuple[float, float],
        rng: random.Random,
    ):
        self.vu_id = vu_id
        self.iterations = 0
        self.retire_deadline: float | None = None
        self._workload = workload
        self._think_time = think_time
        self._rng = rng
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"{scenario}-vu-{vu_id}",
            daemon=True,
        )

    @property
    def name(self) -> str:
        return self._thread.name

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        """Ask the user to exit after its current iteration."""
        self._stop.set()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        low, high = self._think_time
        while not self._stop.is_set():
            try:
                self._workload()
            except Exception:
                logger.exception("Iteration %d of %s raised", self.iterations + 1, self.name)
            self.iterations += 1
            pause = self._rng.uniform(low, high) if high > 0 else 0.0
            if pause > 0:
                self._stop.wait(pause)


class ScenarioRunner:
    """
    Realise one :class:`ScenarioDefinition` on a background controller thread.

    Args:
        definition: The scenario to run.
        workload: Callable executed once per iteration by every user.
        tick_seconds: How often ramping scenarios re-evaluate their target.
        rng: Source of think-time randomness; seed it for reproducible tests.
        clock: Monotonic clock, replaceable in tests.
    """

    def __init__(
        self,
        definition: ScenarioDefinition,
        workload: Workload,
        *,
        tick_seconds: float = 0.1,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.definition = definition
        self._workload = workload
        self._tick = tick_seconds
        self._rng = rng or random.Random()
        self._clock = clock

        self._lock = threading.Lock()
        self._state = ScenarioState.PENDING
        self._active: list[VirtualUser] = []
        self._retiring: list[VirtualUser] = []
        self._draining: list[VirtualUser] = []
        self._next_id = 1
        self._peak = 0
        self._abandoned = 0
        self._iterations_done = 0

        self._stop_requested = threading.Event()
        self._done = threading.Event()
        self._thread: threading.Thread | None = None
        self.started_at: float | None = None
        self.stopped_at: float | None = None
        self.error: BaseException | None = None

    # ---- observation ------------------------------------------------

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def state(self) -> ScenarioState:
        with self._lock:
            return self._state

    @property
    def active_vus(self) -> int:
        """Users currently scheduled to keep iterating."""
        with self._lock:
            return len(self._active)

    @property
    def live_vus(self) -> int:
        """Threads still running, including retiring and draining users."""
        with self._lock:
            users = self._active + self._retiring + self._draining
        return sum(1 for vu in users if vu.is_alive())

    @property
    def peak_vus(self) -> int:
        with self._lock:
            return self._peak

    @property
    def abandoned_vus(self) -> int:
        with self._lock:
            return self._abandoned

    @property
    def iterations(self) -> int:
        with self._lock:
            users = self._active + self._retiring + self._draining
            done = self._iterations_done
        return done + sum(vu.iterations for vu in users)

    # ---- control ----------------------------------------------------

    def start(self) -> None:
        """Start the controller thread; the scenario moves to RUNNING."""
        with self._lock:
            if self._state is not ScenarioState.PENDING:
                raise RuntimeError(f"Scenario '{self.name}' has already been started")
            self._state = ScenarioState.RUNNING
        self._thread = threading.Thread(target=self._run, name=f"scenario-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Close the run window early; users drain as if the duration had elapsed."""
        self._stop_requested.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait until STOPPED; returns ``False`` if *timeout* expired first."""
        return self._done.wait(timeout)

    # ---- controller -------------------------------------------------

    def _set_state(self, state: ScenarioState) -> None:
        with self._lock:
            previous, self._state = self._state, state
        logger.info("Scenario %s: %s -> %s", self.name, previous.value, state.value)

    def _run(self) -> None:
        self.started_at = self._clock()
        logger.info("Scenario %s: %s -> %s", self.name, ScenarioState.PENDING.value, ScenarioState.RUNNING.value)
        try:
            if self.definition.kind is ScenarioKind.CONSTANT:
                self._run_constant()
            else:
                self._run_ramping()
        except Exception as exc:
            logger.exception("Scenario %s failed while running", self.name)
            self.error = exc
        finally:
            self._set_state(ScenarioState.DRAINING)
            self._drain()
            self.stopped_at = self._clock()
            self._set_state(ScenarioState.STOPPED)
            self._done.set()

    def _run_constant(self) -> None:
        self._scale_to(self.definition.vus)
        self._stop_requested.wait(self.definition.duration)

    def _run_ramping(self) -> None:
        definition = self.definition
        total = definition.total_duration
        self._scale_to(definition.start_vus)
        while True:
            elapsed = self._clock() - self.started_at
            if elapsed >= total:
                return
            self._scale_to(ramp_target(definition.start_vus, definition.stages, elapsed))
            self._reap_retiring()
            if self._stop_requested.wait(min(self._tick, total - elapsed)):
                return

    def _spawn(self) -> VirtualUser:
        vu = VirtualUser(
            self._next_id,
            self.name,
            self._workload,
            self.definition.think_time,
            self._rng,
        )
        self._next_id += 1
        vu.start()
        return vu

    def _scale_to(self, target: int) -> None:
        with self._lock:
            # Retiring users still hold a thread, so they count toward the target.
            retiring = sum(1 for vu in self._retiring if vu.is_alive())
            while len(self._active) + retiring < target:
                self._active.append(self._spawn())
            while len(self._active) > target:
                vu = self._active.pop()
                vu.stop()
                vu.retire_deadline = self._clock() + self.definition.graceful_ramp_down
                self._retiring.append(vu)
            self._peak = max(self._peak, len(self._active))

    def _reap_retiring(self) -> None:
        now = self._clock()
        with self._lock:
            still_retiring: list[VirtualUser] = []
            for vu in self._retiring:
                if not vu.is_alive():
                    self._iterations_done += vu.iterations
                elif vu.retire_deadline is not None and now >= vu.retire_deadline:
                    self._abandoned += 1
                    self._iterations_done += vu.iterations
                    logger.warning("Scenario %s: abandoning %s after graceful ramp-down", self.name, vu.name)
                else:
                    still_retiring.append(vu)
            self._retiring = still_retiring

    def _drain(self) -> None:
        with self._lock:
            self._draining = self._active + self._retiring
            self._active = []
            self._retiring = []
            users = list(self._draining)

        for vu in users:
            vu.stop()

        deadline = self._clock() + self.definition.graceful_stop
        for vu in users:
            vu.join(max(0.0, deadline - self._clock()))

        stragglers = [vu for vu in users if vu.is_alive()]
        with self._lock:
            self._abandoned += len(stragglers)
            self._iterations_done += sum(vu.iterations for vu in users if vu not in stragglers)
            self._draining = stragglers
        if stragglers:
            logger.warning(
                "Scenario %s: %d user(s) still running after graceful stop of %.1fs were abandoned",
                self.name,
                len(stragglers),
                self.definition.graceful_stop,
            )


class ScenarioScheduler:
    """
    Run several scenarios concurrently and independently.

    Scenarios share the metric sink and identity pool through their
    workloads but have independent concurrency schedules.
    """

    def __init__(self, runners: Sequence[ScenarioRunner]):
        if not runners:
            raise ConfigurationError("At least one scenario must be scheduled")
        names = [runner.name for runner in runners]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate scenario names: {duplicates}")
        self._runners = list(runners)

    @classmethod
    def from_definitions(
        cls,
        definitions: Sequence[ScenarioDefinition],
        workloads: Mapping[str, Workload],
        *,
        tick_seconds: float = 0.1,
        rng: random.Random | None = None,
    ) -> ScenarioScheduler:
        """
        Build runners for *definitions*, resolving each ``exec`` name.

        Raises:
            ConfigurationError: If a scenario names an unknown workload.
        """
        rng = rng or random.Random()
        runners = []
        for definition in definitions:
            workload = workloads.get(definition.exec)
            if workload is None:
                raise ConfigurationError(
                    f"Scenario '{definition.name}' references unknown workload '{definition.exec}'"
                )
            runners.append(
                ScenarioRunner(
                    definition,
                    workload,
                    tick_seconds=tick_seconds,
                    rng=random.Random(rng.random()),
                )
            )
        return cls(runners)

    @property
    def runners(self) -> list[ScenarioRunner]:
        return list(self._runners)

    @property
    def active_vus(self) -> int:
        return sum(runner.active_vus for runner in self._runners)

    @property
    def done(self) -> bool:
        return all(runner.state is ScenarioState.STOPPED for runner in self._runners)

    def start(self) -> None:
        for runner in self._runners:
            runner.start()

    def stop(self) -> None:
        for runner in self._runners:
            runner.stop()

    def wait(self) -> None:
        """
        Block until every scenario is STOPPED.

        Raises:
            RuntimeError: If a scenario controller crashed; the original
                exception is chained.
        """
        for runner in self._runners:
            runner.join()
        for runner in self._runners:
            if runner.error is not None:
                raise RuntimeError(f"Scenario '{runner.name}' failed") from runner.error

    def run(self) -> None:
        self.start()
        self.wait()
