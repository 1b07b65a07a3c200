"""
Report artifacts and live progress output.

The engine only produces an in-memory :class:`AggregatedReport`.  This
module derives the artifacts a run leaves behind: a JSON document, a
Markdown summary, a self-contained HTML page and a console summary
table.  Artifacts are plain ``name -> content`` pairs handed to an
:class:`ArtifactSink`; :class:`DirectoryArtifactSink` is the file-based
collaborator used by the CLI.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, TextIO

from jinja2 import Environment, PackageLoader, select_autoescape

from .metrics import TOTAL_REQUESTS, MetricSink, MetricSnapshot
from .models import UserCategory
from .report import AggregatedReport, format_percent

logger = logging.getLogger(__name__)

STDOUT = "stdout"

CATEGORY_TITLES = {
    UserCategory.MIGRATED: "Migrated users",
    UserCategory.LEGACY: "Legacy users (first authentication)",
    UserCategory.INVALID: "Invalid credentials",
}


def _format_ms(value: object) -> str:
    if value is None:
        return "n/a"
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def _environment() -> Environment:
    env = Environment(
        loader=PackageLoader("loadtest_app", "templates"),
        autoescape=select_autoescape(["html", "html.j2"]),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["ms"] = _format_ms
    env.filters["percent"] = format_percent
    return env


_ENV = _environment()


def render_json(report: AggregatedReport) -> str:
    return json.dumps(report.to_dict(), indent=2)


def render_markdown(report: AggregatedReport) -> str:
    template = _ENV.get_template("summary.md.j2")
    return template.render(report=report, labels=report.labels, category_titles=CATEGORY_TITLES)


def render_html(report: AggregatedReport, snapshot: MetricSnapshot | None = None) -> str:
    """Render a standalone HTML page; *snapshot* adds a table of every raw metric."""
    p95s = {backend: item.response_times.p95 or 0.0 for backend, item in report.backends.items()}
    widest = max(p95s.values(), default=0.0)
    bar_widths = {
        backend: round(value / widest * 100, 1) if widest > 0 else 0.0
        for backend, value in p95s.items()
    }
    template = _ENV.get_template("summary.html.j2")
    return template.render(
        report=report,
        labels=report.labels,
        category_titles=CATEGORY_TITLES,
        bar_widths=bar_widths,
        metrics=snapshot.to_dict() if snapshot is not None else {},
    )


def render_text_summary(report: AggregatedReport) -> str:
    """Fixed-width console table, one block per backend plus thresholds."""
    width = 66
    lines = ["Login Backend Comparison", "-" * width]
    lines.append(f"{'Backend':<14}{'Requests':>10}{'Success':>10}{'Errors':>10}{'Avg ms':>11}{'P95 ms':>11}")
    lines.append("-" * width)
    for item in report.backends.values():
        times = item.response_times
        lines.append(
            f"{item.label:<14}{item.total:>10}{format_percent(item.success_rate):>10}"
            f"{format_percent(item.error_rate):>10}{_format_ms(times.avg):>11}{_format_ms(times.p95):>11}"
        )
    lines.append("-" * width)

    if report.thresholds:
        lines.append(f"{'Threshold':<46}{'Observed':>12}{'Status':>8}")
        lines.append("-" * width)
        for name, verdict in report.thresholds.items():
            for expression, passed in verdict.results.items():
                label = f"{name} {expression}"
                observed = _format_ms(verdict.observed.get(expression))
                lines.append(f"{label:<46}{observed:>12}{('PASS' if passed else 'FAIL'):>8}")
        lines.append("-" * width)

    labels = report.labels
    comparison = report.comparison
    lines.append(f"Winner (avg response): {labels[comparison.winner_avg_response]}")
    lines.append(f"Winner (p95 response): {labels[comparison.winner_p95_response]}")
    lines.append(f"Winner (success rate): {labels[comparison.winner_success_rate]}")
    lines.append(f"Overall: {'PASS' if report.passed else 'FAIL'}")
    return "\n".join(lines) + "\n"


def build_artifacts(
    report: AggregatedReport,
    snapshot: MetricSnapshot | None = None,
    *,
    results_dir: str = "test_results",
) -> dict[str, str]:
    """
    Render every artifact of a run.

    Returns:
        ``{"<dir>/summary_<ts>.json": ..., ".md": ..., ".html": ...,
        "stdout": ...}`` where ``<ts>`` is the report timestamp with
        ``:`` and ``.`` replaced by ``-``.
    """
    stamp = report.timestamp.isoformat().replace(":", "-").replace(".", "-")
    base = f"{results_dir}/summary_{stamp}"
    return {
        f"{base}.json": render_json(report),
        f"{base}.md": render_markdown(report),
        f"{base}.html": render_html(report, snapshot),
        STDOUT: render_text_summary(report),
    }


class ArtifactSink(Protocol):
    """Anything that accepts named artifacts with string content."""

    def write(self, name: str, content: str) -> None: ...


class DirectoryArtifactSink:
    """
    Write artifacts below *root*; the ``stdout`` artifact goes to *stream*.

    Args:
        root: Base directory artifact names are resolved against.
        stream: Destination of the console summary.
    """

    def __init__(self, root: Path, stream: TextIO | None = None):
        self.root = Path(root)
        self.stream = stream or sys.stdout

    def write(self, name: str, content: str) -> None:
        if name == STDOUT:
            self.stream.write(content)
            return
        path = self.root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info("Wrote %s", path)


def deliver(artifacts: dict[str, str], sink: ArtifactSink) -> None:
    for name, content in artifacts.items():
        sink.write(name, content)


class ProgressMonitor:
    """
    Log live progress every *interval* seconds from a background thread.

    Reads the request counter and the active user count while the run is
    in flight; nothing it reports feeds into the final statistics.
    """

    def __init__(self, sink: MetricSink, active_vus: Callable[[], int], interval: float = 10.0):
        self._sink = sink
        self._active_vus = active_vus
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.reports = 0

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="progress-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()

    def line(self) -> str:
        return (
            f"Progress: {int(self._sink.value(TOTAL_REQUESTS))} requests | "
            f"Active VUs: {self._active_vus()}"
        )

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            logger.info(self.line())
            self.reports += 1
