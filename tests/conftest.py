"""
Shared pytest fixtures for the load-comparison test suite.

This module contains fixtures that are shared across all test modules.
Fixtures follow the Arrange-Act-Assert (AAA) pattern and ensure test
isolation by providing a fresh metric sink and fake HTTP session for
each test.

Key Concepts Demonstrated:
- Fixture scopes (function, session)
- Test data factories with Faker
- Fake ``requests.Session`` objects instead of real network traffic
- A stub login backend served from a background thread
"""

from __future__ import annotations

import os
import threading

import pytest
import requests
from faker import Faker
from werkzeug.serving import make_server

# Set testing environment before importing the engine
os.environ["LOADTEST_ENV"] = "testing"

from loadtest_app.config import DEFAULT_IDENTITIES, TestingConfig
from loadtest_app.fixtures import load_identities
from loadtest_app.metrics import MetricSink, declare_login_metrics
from loadtest_app.models import Backend, BackendTarget, TestIdentity, UserCategory
from tests.helpers import create_stub_backend


# Initialize Faker for generating test data
fake = Faker()


# -----------------------------------------------------------------------------
# Data fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="session")
def settings():
    """Engine settings for tests: fake hosts, short timeouts, fixed seed."""
    return TestingConfig


@pytest.fixture(scope="function")
def sink():
    """Fresh metric sink with the login metrics declared."""
    return declare_login_metrics(MetricSink())


@pytest.fixture(scope="function")
def identities() -> list[TestIdentity]:
    """The default fixed identity pool."""
    return load_identities(DEFAULT_IDENTITIES)


@pytest.fixture(scope="function")
def identity_factory():
    """
    Factory fixture for building random identities.

    Usage:
        def test_something(identity_factory):
            identity = identity_factory(category=UserCategory.LEGACY)
    """
    def _create(category: UserCategory = UserCategory.MIGRATED) -> TestIdentity:
        return TestIdentity(
            username=fake.unique.email(),
            password=fake.password(length=12),
            category=category,
        )

    return _create


@pytest.fixture(scope="function")
def targets(settings) -> dict[Backend, BackendTarget]:
    return {
        Backend.BACKEND_A: BackendTarget(Backend.BACKEND_A, settings.BACKEND_A_URL, "Elixir"),
        Backend.BACKEND_B: BackendTarget(Backend.BACKEND_B, settings.BACKEND_B_URL, "Python"),
    }


@pytest.fixture(scope="session")
def live_backend():
    """
    Serve the stub login backend on a free local port.

    The server runs in a background daemon thread and is shut down at
    the end of the session.

    Yields:
        str: Base URL of the running server.
    """
    app = create_stub_backend(load_identities(DEFAULT_IDENTITIES))
    server = make_server("127.0.0.1", 0, app, threaded=True)
    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()

    base_url = f"http://127.0.0.1:{server.server_port}"
    requests.post(f"{base_url}/login", json={}, timeout=5)

    yield base_url

    server.shutdown()
