"""
Concurrency-safe metric accumulators and the shared metric sink.

Every worker thread writes into one :class:`MetricSink` for the whole
run.  Each metric carries its own lock, so contention on one metric
never blocks writers of another and there is no global lock.  All
accumulators aggregate commutatively and associatively: the final
statistics do not depend on how worker writes interleaved.

Three metric kinds exist:

- **Counter**: monotonically increasing total.
- **Rate**: fraction of observations that were ``True``.
- **Trend**: multiset of samples; statistics are computed on read.

Percentiles use the nearest-rank method: for ``N`` sorted samples the
``p``-th percentile is the sample at rank ``ceil(p / 100 * N)`` (ranks
start at 1, minimum rank 1).  No interpolation is performed, so every
reported percentile is an observed value and the result is independent
of sample order.
"""

from __future__ import annotations

import abc
import logging
import math
import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum

from .errors import MetricError
from .models import Backend, UserCategory

logger = logging.getLogger(__name__)

TOTAL_REQUESTS = "total_requests"
CHECKS = "checks"

REPORTED_PERCENTILES = (90.0, 95.0, 99.0)


class MetricKind(str, Enum):
    """Closed set of accumulator kinds."""

    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"


def percentile(sorted_samples: list[float] | tuple[float, ...], pct: float) -> float:
    """
    Nearest-rank percentile of already-sorted samples.

    Args:
        sorted_samples: Non-empty samples in ascending order.
        pct: Percentile in ``[0, 100]``.

    Raises:
        ValueError: If *pct* is out of range or there are no samples.
    """
    if not sorted_samples:
        raise ValueError("percentile of zero samples is undefined")
    if not 0 <= pct <= 100:
        raise ValueError(f"percentile must be 0-100, got {pct}")
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_samples)))
    return sorted_samples[rank - 1]


# =====================================================================
# Finalised statistics
# =====================================================================


@dataclass(frozen=True)
class CounterStats:
    count: float
    rate: float
    kind: MetricKind = field(default=MetricKind.COUNTER, init=False)

    def to_dict(self) -> dict[str, float]:
        return {"count": self.count, "rate": self.rate}


@dataclass(frozen=True)
class RateStats:
    passes: int
    fails: int
    kind: MetricKind = field(default=MetricKind.RATE, init=False)

    @property
    def total(self) -> int:
        return self.passes + self.fails

    @property
    def rate(self) -> float:
        """Fraction of ``True`` observations; exactly ``0.0`` when empty."""
        if self.total == 0:
            return 0.0
        return self.passes / self.total

    def to_dict(self) -> dict[str, float]:
        return {"rate": self.rate, "passes": self.passes, "fails": self.fails, "total": self.total}


@dataclass(frozen=True)
class TrendStats:
    """
    Distribution summary of a trend.

    An empty trend is a first-class state: ``count`` is ``0`` and every
    statistic is ``None`` rather than a made-up zero.
    """

    samples: tuple[float, ...] = field(repr=False)
    kind: MetricKind = field(default=MetricKind.TREND, init=False)

    @classmethod
    def from_samples(cls, samples: Iterable[float]) -> TrendStats:
        return cls(samples=tuple(sorted(samples)))

    @property
    def count(self) -> int:
        return len(self.samples)

    @property
    def empty(self) -> bool:
        return not self.samples

    @property
    def avg(self) -> float | None:
        return math.fsum(self.samples) / len(self.samples) if self.samples else None

    @property
    def min(self) -> float | None:
        return self.samples[0] if self.samples else None

    @property
    def max(self) -> float | None:
        return self.samples[-1] if self.samples else None

    @property
    def med(self) -> float | None:
        return self.percentile(50)

    def percentile(self, pct: float) -> float | None:
        if not self.samples:
            return None
        return percentile(self.samples, pct)

    def to_dict(self) -> dict[str, float | int | None]:
        data: dict[str, float | int | None] = {
            "count": self.count,
            "avg": self.avg,
            "min": self.min,
            "max": self.max,
            "med": self.med,
        }
        for pct in REPORTED_PERCENTILES:
            data[f"p({pct:g})"] = self.percentile(pct)
        return data


MetricStats = CounterStats | RateStats | TrendStats


class MetricSnapshot(Mapping[str, MetricStats]):
    """Read-only mapping of metric name to finalised statistics."""

    def __init__(self, stats: dict[str, MetricStats], duration: float = 0.0):
        self._stats = dict(stats)
        self.duration = duration

    def __getitem__(self, name: str) -> MetricStats:
        return self._stats[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._stats)

    def __len__(self) -> int:
        return len(self._stats)

    def trend(self, name: str) -> TrendStats:
        stats = self._stats.get(name)
        if not isinstance(stats, TrendStats):
            return TrendStats(samples=())
        return stats

    def count(self, name: str) -> float:
        stats = self._stats.get(name)
        return stats.count if isinstance(stats, CounterStats) else 0

    def rate(self, name: str) -> RateStats:
        stats = self._stats.get(name)
        if not isinstance(stats, RateStats):
            return RateStats(passes=0, fails=0)
        return stats

    def to_dict(self) -> dict[str, dict]:
        return {
            name: {"type": stats.kind.value, "values": stats.to_dict()}
            for name, stats in self._stats.items()
        }


# =====================================================================
# Accumulators
# =====================================================================


class Metric(abc.ABC):
    """Abstract accumulator; every instance owns its lock."""

    kind: MetricKind

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()

    @abc.abstractmethod
    def add(self, value) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def merge(self, other: Metric) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def reset(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def stats(self, duration: float = 0.0) -> MetricStats:
        raise NotImplementedError

    def _check_mergeable(self, other: Metric) -> None:
        if type(other) is not type(self):
            raise MetricError(f"Cannot merge {other.kind.value} into {self.kind.value} metric '{self.name}'")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class Counter(Metric):
    kind = MetricKind.COUNTER

    def __init__(self, name: str):
        super().__init__(name)
        self._value: float = 0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def add(self, value: float = 1) -> None:
        if value < 0:
            raise MetricError(f"Counter '{self.name}' cannot decrease (got {value})")
        with self._lock:
            self._value += value

    def merge(self, other: Metric) -> None:
        self._check_mergeable(other)
        self.add(other.value)

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    def stats(self, duration: float = 0.0) -> CounterStats:
        count = self.value
        return CounterStats(count=count, rate=count / duration if duration > 0 else 0.0)


class Rate(Metric):
    kind = MetricKind.RATE

    def __init__(self, name: str):
        super().__init__(name)
        self._passes = 0
        self._total = 0

    def add(self, value: bool) -> None:
        with self._lock:
            self._total += 1
            if value:
                self._passes += 1

    def _counts(self) -> tuple[int, int]:
        with self._lock:
            return self._passes, self._total

    def merge(self, other: Metric) -> None:
        self._check_mergeable(other)
        passes, total = other._counts()
        with self._lock:
            self._passes += passes
            self._total += total

    def reset(self) -> None:
        with self._lock:
            self._passes = 0
            self._total = 0

    def stats(self, duration: float = 0.0) -> RateStats:
        passes, total = self._counts()
        return RateStats(passes=passes, fails=total - passes)


class Trend(Metric):
    kind = MetricKind.TREND

    def __init__(self, name: str):
        super().__init__(name)
        self._samples: list[float] = []

    def add(self, value: float) -> None:
        with self._lock:
            self._samples.append(float(value))

    def _copy(self) -> list[float]:
        with self._lock:
            return list(self._samples)

    def merge(self, other: Metric) -> None:
        self._check_mergeable(other)
        samples = other._copy()
        with self._lock:
            self._samples.extend(samples)

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()

    def stats(self, duration: float = 0.0) -> TrendStats:
        return TrendStats.from_samples(self._copy())


_METRIC_CLASSES: dict[MetricKind, type[Metric]] = {
    MetricKind.COUNTER: Counter,
    MetricKind.RATE: Rate,
    MetricKind.TREND: Trend,
}


class MetricSink:
    """
    Named, typed accumulators shared by every worker of a run.

    Metrics are declared up front; writing to an undeclared name or with
    the wrong kind raises :class:`MetricError`.  After :meth:`freeze`
    further writes are dropped, which keeps the snapshot stable while
    abandoned workers finish their last request.
    """

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._frozen = threading.Event()

    def declare(self, name: str, kind: MetricKind) -> Metric:
        """Declare *name* as a metric of *kind*; re-declaring the same kind is a no-op."""
        existing = self._metrics.get(name)
        if existing is not None:
            if existing.kind is not kind:
                raise MetricError(
                    f"Metric '{name}' already declared as {existing.kind.value}, not {kind.value}"
                )
            return existing
        metric = _METRIC_CLASSES[kind](name)
        self._metrics[name] = metric
        return metric

    def kind_of(self, name: str) -> MetricKind | None:
        metric = self._metrics.get(name)
        return metric.kind if metric else None

    @property
    def names(self) -> list[str]:
        return list(self._metrics)

    @property
    def frozen(self) -> bool:
        return self._frozen.is_set()

    def record(self, name: str, kind: MetricKind, value: float | bool) -> None:
        """
        Add one observation to a declared metric.

        Safe to call from any number of threads without external locking.

        Raises:
            MetricError: If *name* is undeclared or declared with another kind.
        """
        metric = self._metrics.get(name)
        if metric is None:
            raise MetricError(f"Metric '{name}' was never declared")
        if metric.kind is not kind:
            raise MetricError(f"Metric '{name}' is a {metric.kind.value}, not a {kind.value}")
        if self._frozen.is_set():
            logger.debug("Dropping late write to %s after the run window closed", name)
            return
        metric.add(value)

    def value(self, name: str) -> float:
        """Current counter value, for live progress only."""
        metric = self._metrics.get(name)
        return metric.value if isinstance(metric, Counter) else 0

    def freeze(self) -> None:
        self._frozen.set()

    def reset(self) -> None:
        """Clear every accumulator and accept writes again; declarations are kept."""
        for metric in self._metrics.values():
            metric.reset()
        self._frozen.clear()

    def merge(self, other: MetricSink) -> None:
        """Fold every metric of *other* into this sink, declaring missing ones."""
        for name, metric in other._metrics.items():
            self.declare(name, metric.kind).merge(metric)

    def snapshot(self, duration: float = 0.0) -> MetricSnapshot:
        """
        Finalise every metric.

        Args:
            duration: Run length in seconds, used for counter rates.
        """
        return MetricSnapshot(
            {name: metric.stats(duration) for name, metric in self._metrics.items()},
            duration=duration,
        )


# =====================================================================
# Login metric names
# =====================================================================


def duration_metric(backend: Backend) -> str:
    return f"{backend.value}_login_duration"


def error_rate_metric(backend: Backend) -> str:
    return f"{backend.value}_error_rate"


def success_metric(backend: Backend) -> str:
    return f"{backend.value}_success"


def error_metric(backend: Backend) -> str:
    return f"{backend.value}_error"


def category_metric(category: UserCategory) -> str:
    return f"{category.value}_user_duration"


def declare_login_metrics(sink: MetricSink) -> MetricSink:
    """Declare the closed set of metrics written by the login executor."""
    sink.declare(TOTAL_REQUESTS, MetricKind.COUNTER)
    sink.declare(CHECKS, MetricKind.RATE)
    for backend in Backend:
        sink.declare(duration_metric(backend), MetricKind.TREND)
        sink.declare(error_rate_metric(backend), MetricKind.RATE)
        sink.declare(success_metric(backend), MetricKind.COUNTER)
        sink.declare(error_metric(backend), MetricKind.COUNTER)
    for category in UserCategory:
        sink.declare(category_metric(category), MetricKind.TREND)
    return sink
