"""
Report synthesis: turns the final metric snapshot into a comparison report.

:func:`build_report` is a pure function of the snapshot and the threshold
verdicts.  It computes per-backend totals and rates, latency
distributions per backend and per user category, and three comparison
verdicts.  Rendering the report (JSON, Markdown, HTML, console) lives in
:mod:`loadtest_app.renderers`.

Comparison rules:

- ``winner_avg_response``: lower mean latency wins.
- ``winner_p95_response``: lower p95 latency wins.
- ``winner_success_rate``: higher success rate wins.

A backend without latency samples never wins a latency comparison
against one that has samples.  Ties go to ``backend_b``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .metrics import (
    CHECKS,
    TOTAL_REQUESTS,
    MetricSnapshot,
    TrendStats,
    category_metric,
    duration_metric,
    error_metric,
    error_rate_metric,
    success_metric,
)
from .models import Backend, UserCategory
from .thresholds import ThresholdVerdict


def format_percent(fraction: float) -> str:
    """Format a ``0..1`` fraction as ``"12.34%"``."""
    return f"{fraction * 100:.2f}%"


def _round(value: float | None) -> float | None:
    return None if value is None else round(value, 2)


@dataclass(frozen=True)
class LatencyStats:
    """Latency distribution summary in milliseconds; ``None`` means no samples."""

    count: int
    avg: float | None
    min: float | None
    max: float | None
    p50: float | None
    p90: float | None
    p95: float | None
    p99: float | None

    @classmethod
    def from_trend(cls, trend: TrendStats) -> LatencyStats:
        return cls(
            count=trend.count,
            avg=trend.avg,
            min=trend.min,
            max=trend.max,
            p50=trend.med,
            p90=trend.percentile(90),
            p95=trend.percentile(95),
            p99=trend.percentile(99),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "avg": _round(self.avg),
            "min": _round(self.min),
            "max": _round(self.max),
            "p50": _round(self.p50),
            "p90": _round(self.p90),
            "p95": _round(self.p95),
            "p99": _round(self.p99),
        }


@dataclass(frozen=True)
class BackendReport:
    """
    Totals and latency for one backend.

    Attributes:
        backend: Which backend this is.
        label: Display name.
        successful: Probes with the expected status.
        failed: Probes with a wrong status or no response.
        error_rate: Fraction of failed probes, ``0.0`` without traffic.
        response_times: Latency distribution.
        thresholds: Predicate -> ``PASS``/``FAIL`` for this backend's metrics.
    """

    backend: Backend
    label: str
    successful: int
    failed: int
    error_rate: float
    response_times: LatencyStats
    thresholds: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.successful + self.failed

    @property
    def success_rate(self) -> float:
        """Fraction of successful probes; ``0.0`` when the backend saw no traffic."""
        if self.total == 0:
            return 0.0
        return self.successful / self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "total_requests": self.total,
            "successful_requests": self.successful,
            "failed_requests": self.failed,
            "success_rate": format_percent(self.success_rate),
            "error_rate": format_percent(self.error_rate),
            "response_times": self.response_times.to_dict(),
            "thresholds": dict(self.thresholds),
        }


@dataclass(frozen=True)
class Comparison:
    """Winning backend per comparison criterion."""

    winner_avg_response: Backend
    winner_p95_response: Backend
    winner_success_rate: Backend

    def to_dict(self, labels: dict[Backend, str]) -> dict[str, str]:
        return {
            "winner_avg_response": labels[self.winner_avg_response],
            "winner_p95_response": labels[self.winner_p95_response],
            "winner_success_rate": labels[self.winner_success_rate],
        }


@dataclass(frozen=True)
class AggregatedReport:
    """Read-only result of one run, built once after every worker drained."""

    timestamp: datetime
    duration: float
    scenarios: tuple[str, ...]
    total_requests: int
    checks_rate: float
    backends: dict[Backend, BackendReport]
    user_type_metrics: dict[UserCategory, LatencyStats]
    thresholds: dict[str, ThresholdVerdict]
    comparison: Comparison

    @property
    def labels(self) -> dict[Backend, str]:
        return {backend: report.label for backend, report in self.backends.items()}

    @property
    def passed(self) -> bool:
        """True when every threshold passed."""
        return all(verdict.passed for verdict in self.thresholds.values())

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON structure written to ``summary_<ts>.json``."""
        data: dict[str, Any] = {
            "test_info": {
                "timestamp": self.timestamp.isoformat(),
                "duration": round(self.duration, 3),
                "scenarios": list(self.scenarios),
                "total_requests": self.total_requests,
                "checks_rate": format_percent(self.checks_rate),
            },
        }
        for backend, report in self.backends.items():
            data[backend.value] = report.to_dict()
        data["comparison"] = self.comparison.to_dict(self.labels)
        data["user_type_metrics"] = {
            f"{category.value}_users": stats.to_dict()
            for category, stats in self.user_type_metrics.items()
        }
        data["thresholds"] = {name: verdict.to_dict() for name, verdict in self.thresholds.items()}
        data["passed"] = self.passed
        return data


def _lower_wins(a: float | None, b: float | None) -> Backend:
    if a is None:
        return Backend.BACKEND_B
    if b is None:
        return Backend.BACKEND_A
    return Backend.BACKEND_A if a < b else Backend.BACKEND_B


def compare(reports: dict[Backend, BackendReport]) -> Comparison:
    a = reports[Backend.BACKEND_A]
    b = reports[Backend.BACKEND_B]
    return Comparison(
        winner_avg_response=_lower_wins(a.response_times.avg, b.response_times.avg),
        winner_p95_response=_lower_wins(a.response_times.p95, b.response_times.p95),
        winner_success_rate=(
            Backend.BACKEND_A if a.success_rate > b.success_rate else Backend.BACKEND_B
        ),
    )


def _backend_thresholds(backend: Backend, verdicts: dict[str, ThresholdVerdict]) -> dict[str, str]:
    prefix = f"{backend.value}_"
    results: dict[str, str] = {}
    for name, verdict in verdicts.items():
        if not name.startswith(prefix):
            continue
        for expression, passed in verdict.results.items():
            results[f"{name[len(prefix):]}: {expression}"] = "PASS" if passed else "FAIL"
    return results


def build_report(
    snapshot: MetricSnapshot,
    verdicts: dict[str, ThresholdVerdict],
    *,
    labels: dict[Backend, str] | None = None,
    scenarios: tuple[str, ...] | list[str] = (),
    duration: float | None = None,
    timestamp: datetime | None = None,
) -> AggregatedReport:
    """
    Assemble the comparison report from final statistics.

    Args:
        snapshot: Final metric snapshot with the login metrics.
        verdicts: Threshold verdicts for the same snapshot.
        labels: Display name per backend; defaults to the enum values.
        scenarios: Names of the scenarios that ran.
        duration: Run length in seconds; defaults to ``snapshot.duration``.
        timestamp: Report time; defaults to now (UTC).
    """
    labels = labels or {}
    backends: dict[Backend, BackendReport] = {}
    for backend in Backend:
        backends[backend] = BackendReport(
            backend=backend,
            label=labels.get(backend, backend.value),
            successful=int(snapshot.count(success_metric(backend))),
            failed=int(snapshot.count(error_metric(backend))),
            error_rate=snapshot.rate(error_rate_metric(backend)).rate,
            response_times=LatencyStats.from_trend(snapshot.trend(duration_metric(backend))),
            thresholds=_backend_thresholds(backend, verdicts),
        )

    return AggregatedReport(
        timestamp=timestamp or datetime.now(timezone.utc),
        duration=snapshot.duration if duration is None else duration,
        scenarios=tuple(scenarios),
        total_requests=int(snapshot.count(TOTAL_REQUESTS)),
        checks_rate=snapshot.rate(CHECKS).rate,
        backends=backends,
        user_type_metrics={
            category: LatencyStats.from_trend(snapshot.trend(category_metric(category)))
            for category in UserCategory
        },
        thresholds=dict(verdicts),
        comparison=compare(backends),
    )
