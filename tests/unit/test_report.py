"""
Unit tests for report synthesis and backend comparison.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from loadtest_app.metrics import (
    CHECKS,
    TOTAL_REQUESTS,
    MetricKind,
    category_metric,
    duration_metric,
    error_metric,
    error_rate_metric,
    success_metric,
)
from loadtest_app.models import Backend, UserCategory
from loadtest_app.report import build_report, format_percent
from loadtest_app.thresholds import ThresholdEvaluator


pytestmark = pytest.mark.unit

LABELS = {Backend.BACKEND_A: "Elixir", Backend.BACKEND_B: "Python"}
THRESHOLDS = {
    "backend_a_login_duration": ["p(95)<500"],
    "backend_b_login_duration": ["p(95)<500"],
    "backend_a_error_rate": ["rate<0.05"],
    "backend_b_error_rate": ["rate<0.05"],
}


def _record_backend(sink, backend, latencies, failures):
    """Record one probe per latency; the first *failures* probes fail."""
    for index, latency in enumerate(latencies):
        success = index >= failures
        sink.record(TOTAL_REQUESTS, MetricKind.COUNTER, 1)
        sink.record(CHECKS, MetricKind.RATE, success)
        sink.record(duration_metric(backend), MetricKind.TREND, latency)
        sink.record(category_metric(UserCategory.MIGRATED), MetricKind.TREND, latency)
        sink.record(error_rate_metric(backend), MetricKind.RATE, not success)
        name = success_metric(backend) if success else error_metric(backend)
        sink.record(name, MetricKind.COUNTER, 1)


def _build(sink):
    snapshot = sink.snapshot(duration=60.0)
    verdicts = ThresholdEvaluator.for_sink(THRESHOLDS, sink).evaluate(snapshot)
    return build_report(
        snapshot,
        verdicts,
        labels=LABELS,
        scenarios=["constant_load"],
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )


def test_format_percent():
    assert format_percent(0.95) == "95.00%"
    assert format_percent(0.0) == "0.00%"


def test_comparison_of_two_backends(sink):
    # Arrange: A answers 95/100 correctly with p95 480ms, B 98/100 with p95 520ms
    a_latencies = [100.0] * 94 + [480.0] + [600.0] * 5
    b_latencies = [90.0] * 94 + [520.0] + [700.0] * 5
    _record_backend(sink, Backend.BACKEND_A, a_latencies, failures=5)
    _record_backend(sink, Backend.BACKEND_B, b_latencies, failures=2)

    # Act
    report = _build(sink)

    # Assert
    a = report.backends[Backend.BACKEND_A]
    b = report.backends[Backend.BACKEND_B]
    assert (a.successful, a.failed, a.total) == (95, 5, 100)
    assert (b.successful, b.failed, b.total) == (98, 2, 100)
    assert a.response_times.p95 == 480.0
    assert b.response_times.p95 == 520.0
    assert a.thresholds["login_duration: p(95)<500"] == "PASS"
    assert b.thresholds["login_duration: p(95)<500"] == "FAIL"
    assert a.thresholds["error_rate: rate<0.05"] == "FAIL"
    assert b.thresholds["error_rate: rate<0.05"] == "PASS"
    assert report.comparison.winner_p95_response is Backend.BACKEND_A
    assert report.comparison.winner_success_rate is Backend.BACKEND_B
    assert report.comparison.winner_avg_response is Backend.BACKEND_B
    assert report.total_requests == 200
    assert not report.passed


def test_report_to_dict_shape(sink):
    # Arrange
    _record_backend(sink, Backend.BACKEND_A, [100.0] * 19 + [300.0], failures=1)

    # Act
    data = _build(sink).to_dict()

    # Assert
    assert data["test_info"]["timestamp"] == "2024-05-01T12:00:00+00:00"
    assert data["test_info"]["scenarios"] == ["constant_load"]
    assert data["backend_a"]["success_rate"] == "95.00%"
    assert data["backend_a"]["error_rate"] == "5.00%"
    assert data["backend_a"]["label"] == "Elixir"
    assert data["comparison"]["winner_p95_response"] == "Elixir"
    assert data["user_type_metrics"]["migrated_users"]["count"] == 20
    assert data["user_type_metrics"]["invalid_users"]["avg"] is None
    assert data["thresholds"]["backend_a_error_rate"]["results"] == {"rate<0.05": "FAIL"}
    assert data["passed"] is False


def test_backend_without_traffic_reports_zero_rates(sink):
    # Arrange
    _record_backend(sink, Backend.BACKEND_B, [50.0, 60.0], failures=0)

    # Act
    report = _build(sink)

    # Assert
    idle = report.backends[Backend.BACKEND_A]
    assert idle.total == 0
    assert idle.success_rate == 0.0
    assert idle.to_dict()["success_rate"] == "0.00%"
    assert idle.to_dict()["error_rate"] == "0.00%"
    assert idle.response_times.avg is None
    assert idle.thresholds["login_duration: p(95)<500"] == "FAIL"
    assert idle.thresholds["error_rate: rate<0.05"] == "PASS"


def test_backend_without_samples_never_wins_latency(sink):
    _record_backend(sink, Backend.BACKEND_B, [900.0], failures=0)

    report = _build(sink)

    assert report.comparison.winner_avg_response is Backend.BACKEND_B
    assert report.comparison.winner_p95_response is Backend.BACKEND_B

    sink.reset()
    _record_backend(sink, Backend.BACKEND_A, [900.0], failures=0)

    report = _build(sink)

    assert report.comparison.winner_avg_response is Backend.BACKEND_A
    assert report.comparison.winner_p95_response is Backend.BACKEND_A


def test_ties_go_to_backend_b(sink):
    _record_backend(sink, Backend.BACKEND_A, [100.0, 200.0], failures=0)
    _record_backend(sink, Backend.BACKEND_B, [100.0, 200.0], failures=0)

    comparison = _build(sink).comparison

    assert comparison.winner_avg_response is Backend.BACKEND_B
    assert comparison.winner_p95_response is Backend.BACKEND_B
    assert comparison.winner_success_rate is Backend.BACKEND_B


def test_labels_default_to_backend_names(sink):
    snapshot = sink.snapshot()

    report = build_report(snapshot, {})

    assert report.labels == {Backend.BACKEND_A: "backend_a", Backend.BACKEND_B: "backend_b"}
    assert report.passed
