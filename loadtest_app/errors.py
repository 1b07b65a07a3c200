"""
Exception types raised by the load-test engine.

Probe-level failures (timeouts, refused connections, wrong status codes)
are never raised: they are recorded as failed probes and absorbed into
the metrics.  Only setup problems and programming errors surface as
exceptions.
"""

from __future__ import annotations


class LoadTestError(Exception):
    """Base class for every error raised by :mod:`loadtest_app`."""


class ConfigurationError(LoadTestError, ValueError):
    """
    Invalid run configuration detected before any worker starts.

    Raised for an empty identity pool, malformed scenario or stage
    definitions, unknown workloads, and thresholds that reference an
    undeclared metric or an unparseable predicate.
    """


class MetricError(LoadTestError, RuntimeError):
    """A write to an undeclared metric, or with the wrong metric kind."""
