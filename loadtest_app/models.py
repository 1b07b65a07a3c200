"""
Domain models for the login load-comparison engine.

Defines the immutable value types that flow through a run: the test
identities virtual users log in with, the two backends under comparison,
the scenario definitions the scheduler realises, and the per-request
probe results the executor hands to the metric sink.

Key Concepts Demonstrated:
- ``str, Enum`` inheritance for JSON-friendly closed value sets
- Frozen dataclasses for values shared read-only across threads
- Validation at construction so a bad definition never reaches a worker
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ConfigurationError


class UserCategory(str, Enum):
    """
    Expected-outcome classification of a test identity.

    ``migrated`` users already exist on the new backend, ``legacy`` users
    authenticate for the first time, and ``invalid`` credentials must be
    rejected with ``401``.
    """

    MIGRATED = "migrated"
    LEGACY = "legacy"
    INVALID = "invalid"

    @classmethod
    def _missing_(cls, value: object) -> UserCategory | None:
        # Older fixture files call migrated users "existing".
        if isinstance(value, str) and value.lower() == "existing":
            return cls.MIGRATED
        return None


class Backend(str, Enum):
    """The two backends under comparison."""

    BACKEND_A = "backend_a"
    BACKEND_B = "backend_b"


class ScenarioKind(str, Enum):
    """Concurrency profile of a scenario."""

    CONSTANT = "constant"
    RAMPING = "ramping"


@dataclass(frozen=True)
class TestIdentity:
    """
    One login credential from the fixed identity pool.

    Attributes:
        username: Login name sent to the backend.
        password: Plain-text password sent to the backend.
        category: Expected outcome class; drives success classification.
    """

    __test__ = False  # not a pytest test class

    username: str
    password: str
    category: UserCategory

    @property
    def expected_status(self) -> int:
        """HTTP status a correct backend answers for this identity."""
        return 401 if self.category is UserCategory.INVALID else 200


@dataclass(frozen=True)
class ProbeResult:
    """
    Outcome of a single login request.

    ``success`` reflects status correctness only.  ``check_passed``
    additionally requires the latency bound and is diagnostic.

    Attributes:
        target: Backend the request was sent to.
        category: Category of the identity used.
        status: HTTP status code, or ``0`` when no response was received.
        latency_ms: Wall-clock time from dispatch to response or error.
        success: Whether the status matched the identity's expectation.
        check_passed: ``success`` and latency under the check bound.
        group: Named scope tag used for reporting and filtering.
        error: Transport error description, if any.
    """

    target: Backend
    category: UserCategory
    status: int
    latency_ms: float
    success: bool
    check_passed: bool
    group: str
    error: str | None = None


@dataclass(frozen=True)
class Stage:
    """Ramp stage: move linearly to ``target`` users over ``duration`` seconds."""

    duration: float
    target: int

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ConfigurationError(f"Stage duration must be >= 0, got {self.duration}")
        if self.target < 0:
            raise ConfigurationError(f"Stage target must be >= 0, got {self.target}")


@dataclass(frozen=True)
class ScenarioDefinition:
    """
    Declarative concurrency/time profile applied to a workload.

    Attributes:
        name: Unique scenario name.
        kind: ``constant`` or ``ramping``.
        exec: Name of the registered workload each iteration runs.
        vus: Fixed user count (constant scenarios).
        duration: Run window in seconds (constant scenarios).
        start_vus: Initial user count (ramping scenarios).
        stages: Ordered ramp stages (ramping scenarios).
        graceful_stop: Seconds in-flight iterations get after the window closes.
        graceful_ramp_down: Seconds retiring users get while concurrency falls.
        think_time: ``(min, max)`` seconds of random sleep between iterations.
    """

    name: str
    kind: ScenarioKind
    exec: str = "login"
    vus: int = 0
    duration: float = 0.0
    start_vus: int = 0
    stages: tuple[Stage, ...] = ()
    graceful_stop: float = 30.0
    graceful_ramp_down: float = 30.0
    think_time: tuple[float, float] = (0.0, 0.5)

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Scenario name must not be empty")
        if self.kind is ScenarioKind.CONSTANT:
            if self.vus < 1:
                raise ConfigurationError(f"Scenario '{self.name}': vus must be >= 1")
            if self.duration <= 0:
                raise ConfigurationError(f"Scenario '{self.name}': duration must be > 0")
        else:
            if not self.stages:
                raise ConfigurationError(f"Scenario '{self.name}': ramping needs at least one stage")
            if self.start_vus < 0:
                raise ConfigurationError(f"Scenario '{self.name}': start_vus must be >= 0")
            if self.total_duration <= 0:
                raise ConfigurationError(f"Scenario '{self.name}': stages must have a positive total duration")
        if self.graceful_stop < 0 or self.graceful_ramp_down < 0:
            raise ConfigurationError(f"Scenario '{self.name}': grace windows must be >= 0")
        low, high = self.think_time
        if low < 0 or high < low:
            raise ConfigurationError(f"Scenario '{self.name}': invalid think_time {self.think_time}")

    @property
    def total_duration(self) -> float:
        """Length of the run window in seconds, excluding grace periods."""
        if self.kind is ScenarioKind.CONSTANT:
            return self.duration
        return sum(stage.duration for stage in self.stages)

    @property
    def max_vus(self) -> int:
        """Largest concurrency the scenario can ever request."""
        if self.kind is ScenarioKind.CONSTANT:
            return self.vus
        return max([self.start_vus, *(stage.target for stage in self.stages)])

    def to_dict(self) -> dict[str, Any]:
        """Convert the definition to a JSON-serialisable dictionary."""
        data: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "exec": self.exec,
            "graceful_stop": self.graceful_stop,
            "think_time": list(self.think_time),
        }
        if self.kind is ScenarioKind.CONSTANT:
            data.update(vus=self.vus, duration=self.duration)
        else:
            data.update(
                start_vus=self.start_vus,
                stages=[{"duration": s.duration, "target": s.target} for s in self.stages],
                graceful_ramp_down=self.graceful_ramp_down,
            )
        return data


@dataclass(frozen=True)
class BackendTarget:
    """Binding of a :class:`Backend` to its base URL and display label."""

    backend: Backend
    base_url: str
    label: str = field(default="")

    @property
    def login_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/login"
