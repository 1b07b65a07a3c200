"""
Test suite for the load-comparison engine.

This package contains:
- unit/: metrics, thresholds, configuration, executor, report and renderers
- integration/: scheduler timing, engine runs and the command-line entry point
- helpers.py: fake HTTP session and stub login backend
"""
