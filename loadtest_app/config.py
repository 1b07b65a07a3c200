"""
Configuration for the load-comparison engine.

Two layers of configuration exist:

1. **Engine settings**: class-based ``Config`` hierarchy with
   environment-variable overrides (backend URLs, timeouts, scheduler
   tick).  ``get_config`` picks the class from ``LOADTEST_ENV``.
2. **Run configuration**: the scenarios, thresholds and identity pool
   for one run, loaded from a YAML file or taken from the built-in
   defaults for the two-backend login comparison.

Key Concepts Demonstrated:
- Inheritance-based configuration hierarchy with 12-factor overrides
- Separate testing configuration with fake hosts and short timeouts
- YAML run files validated up front so a bad file never starts workers
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError
from .models import Backend, BackendTarget, ScenarioDefinition, ScenarioKind, Stage, TestIdentity
from .fixtures import load_identities


class Config:
    """
    Base (shared) engine configuration.

    Every value can be overridden through an environment variable of
    the same name.
    """

    BACKEND_A_URL: str = os.environ.get("BACKEND_A_URL", "http://localhost:4000")
    BACKEND_B_URL: str = os.environ.get("BACKEND_B_URL", "http://localhost:8000")
    BACKEND_A_LABEL: str = os.environ.get("BACKEND_A_LABEL", "Elixir")
    BACKEND_B_LABEL: str = os.environ.get("BACKEND_B_LABEL", "Python")

    # Seconds before a login request is abandoned and counted as an error.
    REQUEST_TIMEOUT: float = float(os.environ.get("REQUEST_TIMEOUT", "10"))

    # Latency bound of the diagnostic "reasonable response time" check.
    CHECK_LATENCY_MS: float = float(os.environ.get("CHECK_LATENCY_MS", "3000"))

    # How often ramping scenarios re-evaluate their target concurrency.
    SCHEDULER_TICK_SECONDS: float = float(os.environ.get("SCHEDULER_TICK_SECONDS", "0.1"))

    PROGRESS_INTERVAL_SECONDS: float = float(os.environ.get("PROGRESS_INTERVAL_SECONDS", "10"))
    RESULTS_DIR: str = os.environ.get("RESULTS_DIR", "test_results")

    # Empty means "seed from system entropy".
    RANDOM_SEED: str = os.environ.get("RANDOM_SEED", "")


class DevelopmentConfig(Config):
    """Local runs against backends started on the developer machine."""

    DEBUG: bool = True
    TESTING: bool = False


class TestingConfig(Config):
    """
    Test-suite overrides.

    Points backends at non-routable hosts so tests never hit real
    services, and shortens every timer so scheduler tests stay fast.
    """

    __test__ = False

    DEBUG: bool = True
    TESTING: bool = True
    BACKEND_A_URL: str = os.environ.get("TEST_BACKEND_A_URL", "http://backend-a.test")
    BACKEND_B_URL: str = os.environ.get("TEST_BACKEND_B_URL", "http://backend-b.test")
    REQUEST_TIMEOUT: float = float(os.environ.get("TEST_REQUEST_TIMEOUT", "1"))
    SCHEDULER_TICK_SECONDS: float = 0.02
    PROGRESS_INTERVAL_SECONDS: float = 0.5
    RANDOM_SEED: str = os.environ.get("TEST_RANDOM_SEED", "1234")


class ProductionConfig(Config):
    """Runs driven by CI; every value comes from the environment."""

    DEBUG: bool = False
    TESTING: bool = False


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Return the configuration class for the given environment.

    Args:
        env: One of ``"development"``, ``"testing"`` or ``"production"``.
            When *None*, ``LOADTEST_ENV`` is consulted, falling back to
            ``"development"``.

    Returns:
        The matching ``Config`` subclass, or ``DevelopmentConfig`` if the
        key is unrecognised.
    """
    if env is None:
        env = os.environ.get("LOADTEST_ENV", "development")
    return config.get(env, config["default"])


# =====================================================================
# Run configuration
# =====================================================================

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

DEFAULT_IDENTITIES: list[dict[str, str]] = [
    {"username": "migrated@test.com", "password": "MigratedPass123!", "category": "migrated"},
    {"username": "legacy@test.com", "password": "LegacyPass123!", "category": "legacy"},
    {"username": "admin@legacy.com", "password": "AdminPass456!", "category": "legacy"},
    {"username": "newuser@test.com", "password": "NewUserPass789!", "category": "legacy"},
    {"username": "invalid@test.com", "password": "WrongPass!", "category": "invalid"},
]

DEFAULT_SCENARIOS: dict[str, dict[str, Any]] = {
    "constant_load": {
        "executor": "constant",
        "vus": 50,
        "duration": "2m",
        "exec": "login",
        "graceful_stop": "30s",
    },
    "spike_test": {
        "executor": "ramping",
        "start_vus": 10,
        "stages": [
            {"duration": "30s", "target": 100},
            {"duration": "1m", "target": 100},
            {"duration": "30s", "target": 10},
        ],
        "graceful_ramp_down": "30s",
        "exec": "login",
    },
}

DEFAULT_THRESHOLDS: dict[str, list[str]] = {
    "backend_a_login_duration": ["p(95)<500"],
    "backend_b_login_duration": ["p(95)<500"],
    "backend_a_error_rate": ["rate<0.05"],
    "backend_b_error_rate": ["rate<0.05"],
}


def parse_duration(value: Any) -> float:
    """
    Convert a duration to seconds.

    Accepts plain numbers (already seconds) and compound strings such as
    ``"30s"``, ``"2m"``, ``"1m30s"`` or ``"500ms"``.

    Raises:
        ConfigurationError: If the value cannot be parsed or is negative.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(num + unit for num, unit in parts) != text:
                raise ConfigurationError(f"Invalid duration: {value!r}") from None
            seconds = sum(float(num) * _DURATION_UNITS[unit] for num, unit in parts)
    else:
        raise ConfigurationError(f"Invalid duration: {value!r}")

    if seconds < 0:
        raise ConfigurationError(f"Duration must be >= 0, got {value!r}")
    return seconds


def _parse_think_time(value: Any, scenario: str) -> tuple[float, float]:
    if value is None:
        return (0.0, 0.5)
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return (parse_duration(value[0]), parse_duration(value[1]))
    raise ConfigurationError(f"Scenario '{scenario}': think_time must be a [min, max] pair")


def build_scenario(name: str, data: dict[str, Any]) -> ScenarioDefinition:
    """
    Build a :class:`ScenarioDefinition` from a run-file mapping.

    ``executor`` accepts ``constant``/``ramping`` as well as the
    ``constant-vus``/``ramping-vus`` spellings.  Both snake_case and
    camelCase keys are accepted for the grace windows.

    Raises:
        ConfigurationError: On unknown executors or malformed fields.
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"Scenario '{name}' must be a mapping")

    raw_kind = str(data.get("executor", data.get("kind", ""))).lower()
    raw_kind = raw_kind.removesuffix("-vus")
    try:
        kind = ScenarioKind(raw_kind)
    except ValueError:
        raise ConfigurationError(f"Scenario '{name}': unknown executor {raw_kind!r}") from None

    graceful_stop = data.get("graceful_stop", data.get("gracefulStop", 30))
    graceful_ramp_down = data.get("graceful_ramp_down", data.get("gracefulRampDown", 30))

    try:
        common: dict[str, Any] = {
            "name": name,
            "kind": kind,
            "exec": str(data.get("exec", "login")),
            "graceful_stop": parse_duration(graceful_stop),
            "graceful_ramp_down": parse_duration(graceful_ramp_down),
            "think_time": _parse_think_time(data.get("think_time"), name),
        }
        if kind is ScenarioKind.CONSTANT:
            return ScenarioDefinition(
                vus=int(data.get("vus", 0)),
                duration=parse_duration(data.get("duration", 0)),
                **common,
            )

        raw_stages = data.get("stages")
        if not isinstance(raw_stages, list):
            raise ConfigurationError(f"Scenario '{name}': stages must be a list")
        stages = tuple(
            Stage(duration=parse_duration(stage["duration"]), target=int(stage["target"]))
            for stage in raw_stages
        )
        return ScenarioDefinition(
            start_vus=int(data.get("start_vus", data.get("startVUs", 0))),
            stages=stages,
            **common,
        )
    except ConfigurationError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Scenario '{name}' is malformed: {exc}") from exc


@dataclass
class RunConfig:
    """
    Everything one run needs besides the engine settings.

    Attributes:
        backends: Base URL and label per backend.
        scenarios: Scenario definitions, all run concurrently.
        thresholds: Metric name -> list of predicate strings.
        identities: Fixed identity pool.
    """

    backends: dict[Backend, BackendTarget]
    scenarios: list[ScenarioDefinition]
    thresholds: dict[str, list[str]] = field(default_factory=dict)
    identities: list[TestIdentity] = field(default_factory=list)

    @property
    def labels(self) -> dict[Backend, str]:
        return {backend: target.label or backend.value for backend, target in self.backends.items()}


def _backends_from(settings: type[Config], data: dict[str, Any] | None) -> dict[Backend, BackendTarget]:
    defaults = {
        Backend.BACKEND_A: (settings.BACKEND_A_URL, settings.BACKEND_A_LABEL),
        Backend.BACKEND_B: (settings.BACKEND_B_URL, settings.BACKEND_B_LABEL),
    }
    data = data or {}
    unknown = set(data) - {backend.value for backend in Backend}
    if unknown:
        raise ConfigurationError(f"Unknown backends: {sorted(unknown)}")

    backends: dict[Backend, BackendTarget] = {}
    for backend, (url, label) in defaults.items():
        entry = data.get(backend.value) or {}
        backends[backend] = BackendTarget(
            backend=backend,
            base_url=str(entry.get("url", url)),
            label=str(entry.get("label", label)),
        )
    return backends


def _thresholds_from(data: Any) -> dict[str, list[str]]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("thresholds must be a mapping of metric name to predicates")
    thresholds: dict[str, list[str]] = {}
    for metric_name, predicates in data.items():
        if isinstance(predicates, str):
            predicates = [predicates]
        if not isinstance(predicates, list) or not predicates:
            raise ConfigurationError(f"Threshold for '{metric_name}' must list at least one predicate")
        thresholds[str(metric_name)] = [str(p) for p in predicates]
    return thresholds


def run_config_from_dict(data: dict[str, Any], settings: type[Config] | None = None) -> RunConfig:
    """
    Build a :class:`RunConfig` from a parsed mapping.

    Missing sections fall back to the built-in defaults.

    Raises:
        ConfigurationError: If any section is malformed.
    """
    settings = settings or get_config()
    if not isinstance(data, dict):
        raise ConfigurationError("Run configuration must be a mapping")

    raw_scenarios = data.get("scenarios", DEFAULT_SCENARIOS)
    if not isinstance(raw_scenarios, dict) or not raw_scenarios:
        raise ConfigurationError("At least one scenario must be configured")

    return RunConfig(
        backends=_backends_from(settings, data.get("backends")),
        scenarios=[build_scenario(name, body) for name, body in raw_scenarios.items()],
        thresholds=_thresholds_from(data.get("thresholds", DEFAULT_THRESHOLDS)),
        identities=load_identities(data.get("identities", DEFAULT_IDENTITIES)),
    )


def default_run_config(settings: type[Config] | None = None) -> RunConfig:
    """Return the built-in two-backend login comparison run."""
    return run_config_from_dict({}, settings)


def load_run_config(path: Path, settings: type[Config] | None = None) -> RunConfig:
    """
    Read a run configuration from a YAML file.

    Args:
        path: YAML file with optional ``backends``, ``scenarios``,
            ``thresholds`` and ``identities`` sections.
        settings: Engine settings providing backend defaults.

    Raises:
        ConfigurationError: If the file is missing, not valid YAML, or
            describes an invalid run.
    """
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigurationError(f"Unable to read run configuration at '{path}'") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Run configuration at '{path}' is not valid YAML: {exc}") from exc

    return run_config_from_dict(data, settings)
