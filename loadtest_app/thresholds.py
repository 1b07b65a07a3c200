"""
Post-run pass/fail thresholds over final metric statistics.

Thresholds are declared per metric as predicate strings such as
``"p(95)<500"``, ``"p95 < 500"``, ``"avg<=200"`` or ``"rate<0.05"``.
They are parsed and validated against the declared metrics before the
run starts, and evaluated exactly once against the final snapshot.

Zero-sample policy:

- A ``rate`` predicate on a rate metric with no observations **passes**:
  no observed errors is not an error rate breach.
- Any predicate on a trend metric with no samples **fails**: there is no
  meaningful p95 (or average) of nothing, so a latency bound cannot be
  claimed to hold.
- Counter predicates are evaluated against zero.
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from .errors import ConfigurationError
from .metrics import CounterStats, MetricKind, MetricSink, MetricSnapshot, MetricStats, RateStats, TrendStats

_PREDICATE = re.compile(
    r"^\s*(?P<stat>avg|min|max|med|count|rate|p\(\s*\d+(?:\.\d+)?\s*\)|p\d+(?:\.\d+)?)"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<limit>[-+]?\d+(?:\.\d+)?)\s*$"
)

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_STATS_BY_KIND: dict[MetricKind, set[str]] = {
    MetricKind.TREND: {"avg", "min", "max", "med", "percentile"},
    MetricKind.RATE: {"rate"},
    MetricKind.COUNTER: {"count", "rate"},
}

PASS = "PASS"
FAIL = "FAIL"


@dataclass(frozen=True)
class ThresholdRule:
    """
    One parsed predicate over one metric.

    Attributes:
        metric: Metric the predicate applies to.
        expression: Original predicate text, used as the result key.
        kind: Kind of the metric.
        stat: ``avg``, ``min``, ``max``, ``med``, ``percentile``, ``rate`` or ``count``.
        pct: Percentile for ``percentile`` predicates.
        op: Comparison operator symbol.
        limit: Right-hand side of the comparison.
    """

    metric: str
    expression: str
    kind: MetricKind
    stat: str
    op: str
    limit: float
    pct: float | None = None

    def observe(self, stats: MetricStats) -> float | None:
        """The value this rule compares, or ``None`` when there is no data."""
        if isinstance(stats, TrendStats):
            if self.stat == "percentile":
                return stats.percentile(self.pct)
            return getattr(stats, self.stat)
        if isinstance(stats, RateStats):
            return stats.rate
        if isinstance(stats, CounterStats):
            return stats.count if self.stat == "count" else stats.rate
        return None

    def check(self, stats: MetricStats) -> bool:
        if isinstance(stats, TrendStats) and stats.empty:
            return False
        if isinstance(stats, RateStats) and stats.total == 0:
            return True
        observed = self.observe(stats)
        if observed is None:
            return False
        return OPERATORS[self.op](observed, self.limit)


@dataclass(frozen=True)
class ThresholdVerdict:
    """Outcome of every predicate declared for one metric."""

    metric: str
    results: dict[str, bool] = field(default_factory=dict)
    observed: dict[str, float | None] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return all(self.results.values())

    @property
    def label(self) -> str:
        return PASS if self.passed else FAIL

    def to_dict(self) -> dict[str, object]:
        return {
            "passed": self.passed,
            "results": {expr: (PASS if ok else FAIL) for expr, ok in self.results.items()},
            "observed": dict(self.observed),
        }


def parse_predicate(metric: str, expression: str, kind: MetricKind) -> ThresholdRule:
    """
    Parse one predicate string for a metric of *kind*.

    Raises:
        ConfigurationError: If the predicate is malformed or its statistic
            does not apply to the metric's kind.
    """
    match = _PREDICATE.match(expression)
    if match is None:
        raise ConfigurationError(f"Threshold '{expression}' on '{metric}' is not a valid predicate")

    raw_stat = match.group("stat")
    pct: float | None = None
    stat = raw_stat
    if raw_stat.startswith("p"):
        pct = float(raw_stat[1:].strip("()").strip())
        stat = "percentile"
        if not 0 <= pct <= 100:
            raise ConfigurationError(f"Threshold '{expression}' on '{metric}': percentile must be 0-100")

    if stat not in _STATS_BY_KIND[kind]:
        raise ConfigurationError(
            f"Threshold '{expression}' uses '{raw_stat}', which does not apply to {kind.value} metric '{metric}'"
        )

    return ThresholdRule(
        metric=metric,
        expression=expression,
        kind=kind,
        stat=stat,
        op=match.group("op"),
        limit=float(match.group("limit")),
        pct=pct,
    )


class ThresholdEvaluator:
    """
    Validated set of thresholds, evaluated once after the run.

    Args:
        thresholds: Metric name -> predicate strings.
        kinds: Metric name -> kind for every declared metric.

    Raises:
        ConfigurationError: If a threshold names an undeclared metric or a
            predicate is invalid.
    """

    def __init__(self, thresholds: Mapping[str, Sequence[str]], kinds: Mapping[str, MetricKind]):
        self._rules: dict[str, list[ThresholdRule]] = {}
        for metric, expressions in thresholds.items():
            kind = kinds.get(metric)
            if kind is None:
                raise ConfigurationError(f"Threshold references unknown metric '{metric}'")
            self._rules[metric] = [parse_predicate(metric, expr, kind) for expr in expressions]

    @classmethod
    def for_sink(cls, thresholds: Mapping[str, Sequence[str]], sink: MetricSink) -> ThresholdEvaluator:
        return cls(thresholds, {name: sink.kind_of(name) for name in sink.names})

    @property
    def metrics(self) -> list[str]:
        return list(self._rules)

    def evaluate(self, snapshot: MetricSnapshot) -> dict[str, ThresholdVerdict]:
        """Return one verdict per metric with thresholds."""
        verdicts: dict[str, ThresholdVerdict] = {}
        for metric, rules in self._rules.items():
            stats = snapshot.get(metric)
            if stats is None:
                stats = _empty_stats(rules[0].kind)
            verdicts[metric] = ThresholdVerdict(
                metric=metric,
                results={rule.expression: rule.check(stats) for rule in rules},
                observed={rule.expression: rule.observe(stats) for rule in rules},
            )
        return verdicts


def _empty_stats(kind: MetricKind) -> MetricStats:
    if kind is MetricKind.TREND:
        return TrendStats(samples=())
    if kind is MetricKind.RATE:
        return RateStats(passes=0, fails=0)
    return CounterStats(count=0, rate=0.0)
