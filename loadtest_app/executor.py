"""
Login request executor and the default login workload.

The executor performs one authentication probe against a backend,
classifies the outcome and records it into the shared metric sink.
Transport failures (timeouts, refused connections) are recorded as
failed probes and never propagate: a flaky backend must show up in the
error rate, not abort the run.

Two judgments are kept apart on purpose:

- **Status correctness**: ``200`` for migrated/legacy identities,
  ``401`` for invalid ones.  Drives the success/error counters and the
  backend's error rate.
- **Check**: status correctness *and* latency under the check bound.
  Recorded in the ``checks`` rate for diagnostics only.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

import requests

from .fixtures import FixtureProvider, TargetSelector
from .metrics import (
    CHECKS,
    TOTAL_REQUESTS,
    MetricKind,
    MetricSink,
    category_metric,
    duration_metric,
    error_metric,
    error_rate_metric,
    success_metric,
)
from .models import Backend, BackendTarget, ProbeResult, TestIdentity

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}


class RequestExecutor:
    """
    Send login probes and record their outcome.

    Each worker thread gets its own ``requests.Session`` so connection
    pools are never shared between threads.

    Args:
        sink: Metric sink with the login metrics declared.
        targets: Base URL binding per backend.
        timeout: Seconds before a request is abandoned.
        check_latency_ms: Upper latency bound of the diagnostic check.
        session_factory: Callable returning a session-like object with a
            ``post`` method; tests substitute a fake here.
    """

    def __init__(
        self,
        sink: MetricSink,
        targets: Mapping[Backend, BackendTarget],
        *,
        timeout: float = 10.0,
        check_latency_ms: float = 3000.0,
        session_factory: Callable[[], Any] = requests.Session,
    ):
        self._sink = sink
        self._targets = dict(targets)
        self._timeout = timeout
        self._check_latency_ms = check_latency_ms
        self._session_factory = session_factory
        self._local = threading.local()

    def _session(self) -> Any:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            self._local.session = session
        return session

    def probe(self, target: Backend, identity: TestIdentity) -> ProbeResult:
        """
        Send one login request to *target* and record the result.

        Args:
            target: Backend to probe.
            identity: Credentials to log in with.

        Returns:
            The classified :class:`ProbeResult`.
        """
        url = self._targets[target].login_url
        payload = {"username": identity.username, "password": identity.password}
        status = 0
        error: str | None = None

        start = time.perf_counter()
        try:
            response = self._session().post(
                url,
                json=payload,
                headers=JSON_HEADERS,
                timeout=self._timeout,
            )
            status = response.status_code
        except requests.Timeout:
            error = f"timed out after {self._timeout}s"
        except requests.RequestException as exc:
            error = f"{type(exc).__name__}: {exc}"
        latency_ms = (time.perf_counter() - start) * 1000.0

        if error is not None:
            logger.warning("Login probe to %s failed: %s", url, error)

        success = status == identity.expected_status
        result = ProbeResult(
            target=target,
            category=identity.category,
            status=status,
            latency_ms=latency_ms,
            success=success,
            check_passed=success and latency_ms < self._check_latency_ms,
            group=f"login:{target.value}",
            error=error,
        )
        self._record(result)
        return result

    def _record(self, result: ProbeResult) -> None:
        sink = self._sink
        sink.record(TOTAL_REQUESTS, MetricKind.COUNTER, 1)
        sink.record(CHECKS, MetricKind.RATE, result.check_passed)
        sink.record(duration_metric(result.target), MetricKind.TREND, result.latency_ms)
        sink.record(category_metric(result.category), MetricKind.TREND, result.latency_ms)
        sink.record(error_rate_metric(result.target), MetricKind.RATE, not result.success)
        if result.success:
            sink.record(success_metric(result.target), MetricKind.COUNTER, 1)
        else:
            sink.record(error_metric(result.target), MetricKind.COUNTER, 1)


class LoginWorkload:
    """
    One virtual-user iteration: pick a backend, pick an identity, probe.

    Think time between iterations belongs to the scheduler, which waits
    on the user's stop signal so it can be interrupted.
    """

    name = "login"

    def __init__(self, executor: RequestExecutor, fixtures: FixtureProvider, selector: TargetSelector):
        self._executor = executor
        self._fixtures = fixtures
        self._selector = selector

    def __call__(self) -> ProbeResult:
        target = self._selector.pick()
        identity = self._fixtures.pick()
        return self._executor.probe(target, identity)
