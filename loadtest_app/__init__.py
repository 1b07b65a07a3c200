"""
Load-comparison engine for two competing login backends.

This module exposes the engine factory, mirroring an application
factory: settings are resolved by environment name and the run
configuration falls back to the built-in two-backend comparison.
"""

from __future__ import annotations

import logging
from typing import Any

from loadtest_app.config import RunConfig, default_run_config, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_engine(config_name: str | None = None, run_config: RunConfig | None = None, **kwargs: Any):
    """
    Create and configure a load test engine.

    Args:
        config_name: Configuration environment name.
                     If None, uses LOADTEST_ENV environment variable.
        run_config: Scenarios, thresholds and identities for the run.
                    If None, the default comparison run is used.
        **kwargs: Passed through to :class:`LoadTestEngine`.

    Returns:
        Configured :class:`LoadTestEngine` instance.
    """
    from loadtest_app.engine import LoadTestEngine

    settings = get_config(config_name)
    logger.info("Creating engine with config: %s", settings.__name__)
    return LoadTestEngine(settings, run_config or default_run_config(settings), **kwargs)
