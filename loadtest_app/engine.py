"""
Orchestration engine: one object that owns a complete comparison run.

The engine wires the collaborators together (metric sink, identity
pool, request executor, scenario scheduler, threshold evaluator) and
exposes a small lifecycle::

    engine = LoadTestEngine(TestingConfig, run_config)
    engine.start()            # blocks until every scenario is STOPPED
    result = engine.collect() # snapshot + verdicts + report, once per run
    engine.reset()            # ready for another run

Everything that can be wrong with a run configuration is detected in
``__init__``, before a single worker thread exists.

Key Concepts Demonstrated:
- Constructor-time validation so configuration errors never surface
  half-way through a load test
- Seeded random generators split per collaborator for reproducible runs
- Freezing the metric sink when the run window closes
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import requests

from .config import Config, RunConfig
from .executor import LoginWorkload, RequestExecutor
from .fixtures import FixtureProvider, TargetSelector
from .metrics import MetricSink, MetricSnapshot, declare_login_metrics
from .renderers import ProgressMonitor
from .report import AggregatedReport, build_report
from .scheduler import ScenarioScheduler, Workload
from .thresholds import ThresholdEvaluator, ThresholdVerdict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunResult:
    """Final statistics, threshold verdicts and report of one run."""

    snapshot: MetricSnapshot
    verdicts: dict[str, ThresholdVerdict]
    report: AggregatedReport

    @property
    def passed(self) -> bool:
        return all(verdict.passed for verdict in self.verdicts.values())


def _make_rng(seed: str) -> random.Random:
    return random.Random(seed) if seed else random.Random()


class LoadTestEngine:
    """
    Run the configured scenarios against both backends and judge the result.

    Args:
        settings: Engine settings class (see :mod:`loadtest_app.config`).
        run_config: Scenarios, thresholds, identities and backend targets.
        session_factory: Creates the HTTP session used by each worker thread.
        workloads: Extra named workloads, merged over the built-in ``login``.
        rng: Random generator; defaults to one seeded from ``RANDOM_SEED``.

    Raises:
        ConfigurationError: If the identity pool is empty, a scenario names
            an unknown workload, or a threshold is invalid.
    """

    def __init__(
        self,
        settings: type[Config],
        run_config: RunConfig,
        *,
        session_factory: Callable[[], Any] = requests.Session,
        workloads: Mapping[str, Workload] | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings
        self.run_config = run_config
        self._rng = rng or _make_rng(settings.RANDOM_SEED)
        self._session_factory = session_factory
        self._extra_workloads = dict(workloads or {})

        self.fixtures = FixtureProvider(run_config.identities, rng=random.Random(self._rng.random()))
        self.selector = TargetSelector(tuple(run_config.backends), rng=random.Random(self._rng.random()))
        self._build_run()

    def _build_run(self) -> None:
        """
        Create the collaborators owned by a single run.

        Users abandoned by an earlier run keep a reference to that run's
        sink and executor, so every run gets fresh ones and the old sink
        stays frozen.
        """
        self.sink = declare_login_metrics(MetricSink())
        self.executor = RequestExecutor(
            self.sink,
            self.run_config.backends,
            timeout=self.settings.REQUEST_TIMEOUT,
            check_latency_ms=self.settings.CHECK_LATENCY_MS,
            session_factory=self._session_factory,
        )

        self.workloads: dict[str, Workload] = {
            LoginWorkload.name: LoginWorkload(self.executor, self.fixtures, self.selector),
        }
        self.workloads.update(self._extra_workloads)

        self.evaluator = ThresholdEvaluator.for_sink(self.run_config.thresholds, self.sink)
        self.scheduler = self._build_scheduler()

        self._started_at: datetime | None = None
        self._duration: float | None = None
        self._collected = False

    def _build_scheduler(self) -> ScenarioScheduler:
        return ScenarioScheduler.from_definitions(
            self.run_config.scenarios,
            self.workloads,
            tick_seconds=self.settings.SCHEDULER_TICK_SECONDS,
            rng=random.Random(self._rng.random()),
        )

    @property
    def started(self) -> bool:
        return self._started_at is not None

    def start(self) -> None:
        """
        Run every scenario until STOPPED, then close the run window.

        Raises:
            RuntimeError: If this run was already started, or a scenario
                controller crashed.
        """
        if self.started:
            raise RuntimeError("Run already started; call reset() before starting again")

        self._started_at = datetime.now(timezone.utc)
        names = [definition.name for definition in self.run_config.scenarios]
        logger.info(
            "Starting run at %s with scenarios: %s",
            self._started_at.isoformat(),
            ", ".join(names),
        )
        for backend, target in self.run_config.backends.items():
            logger.info("Target %s (%s): %s", backend.value, self.run_config.labels[backend], target.base_url)
        for definition in self.run_config.scenarios:
            logger.debug("Scenario %s: %s", definition.name, definition.to_dict())
        monitor = ProgressMonitor(
            self.sink,
            lambda: self.scheduler.active_vus,
            interval=self.settings.PROGRESS_INTERVAL_SECONDS,
        )
        began = time.monotonic()
        monitor.start()
        try:
            self.scheduler.run()
        finally:
            monitor.stop()
            self.sink.freeze()
            self._duration = time.monotonic() - began
        logger.info("Run finished after %.2fs", self._duration)

    def collect(self) -> RunResult:
        """
        Snapshot the metrics, evaluate thresholds and build the report.

        Raises:
            RuntimeError: If the run has not finished or was already collected.
        """
        if self._duration is None:
            raise RuntimeError("Nothing to collect; the run has not finished")
        if self._collected:
            raise RuntimeError("Results of this run were already collected")
        self._collected = True

        snapshot = self.sink.snapshot(self._duration)
        verdicts = self.evaluator.evaluate(snapshot)
        report = build_report(
            snapshot,
            verdicts,
            labels=self.run_config.labels,
            scenarios=[definition.name for definition in self.run_config.scenarios],
            duration=self._duration,
            timestamp=self._started_at,
        )
        logger.info("Thresholds %s", "passed" if report.passed else "breached")
        return RunResult(snapshot=snapshot, verdicts=verdicts, report=report)

    def reset(self) -> None:
        """Start over with empty metrics and rebuilt scenarios; the old sink stays frozen."""
        self._build_run()

    def run(self) -> RunResult:
        self.start()
        return self.collect()
