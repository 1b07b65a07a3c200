"""
Command-line entry point: run a comparison and gate on its thresholds.

Exit codes follow a three-state convention so that CI can distinguish
"thresholds breached" from "script crashed":

- ``0``: all thresholds passed
- ``1``: at least one threshold was breached
- ``2``: the run could not be executed (bad YAML, unknown metric, etc.)

Key Concepts Demonstrated:
- argparse front end over an engine that never touches the filesystem
- Artifacts (JSON, Markdown, HTML, console table) written after the run
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from loadtest_app import create_engine
from loadtest_app.config import get_config, load_run_config
from loadtest_app.errors import LoadTestError
from loadtest_app.renderers import DirectoryArtifactSink, build_artifacts, deliver

logger = logging.getLogger(__name__)

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_SCRIPT_ERROR = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the comparison run."""
    parser = argparse.ArgumentParser(
        description="Load-test two login backends and compare them."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a run configuration YAML file (defaults to the built-in run)",
    )
    parser.add_argument(
        "--env",
        default=None,
        help="Settings environment: development, testing or production",
    )
    parser.add_argument(
        "--results-dir",
        default=None,
        help="Directory for report artifacts (overrides RESULTS_DIR)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Run the comparison, write the artifacts and return an exit code.

    Returns:
        ``EXIT_PASS`` (0) if all thresholds are met,
        ``EXIT_THRESHOLD_BREACH`` (1) if any are exceeded, or
        ``EXIT_SCRIPT_ERROR`` (2) if the run could not be executed.
    """
    args = parse_args(argv)
    settings = get_config(args.env)

    try:
        run_config = load_run_config(args.config, settings) if args.config else None
        engine = create_engine(args.env, run_config)
        result = engine.run()
    except (LoadTestError, RuntimeError) as exc:
        logger.error("Load test could not be executed: %s", exc)
        print(f"Load test failed: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    results_dir = args.results_dir or settings.RESULTS_DIR
    artifacts = build_artifacts(result.report, result.snapshot, results_dir=results_dir)
    try:
        deliver(artifacts, DirectoryArtifactSink(Path.cwd()))
    except OSError as exc:
        print(f"Unable to write report artifacts: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    return EXIT_PASS if result.passed else EXIT_THRESHOLD_BREACH


if __name__ == "__main__":
    raise SystemExit(main())
