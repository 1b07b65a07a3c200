"""
Reusable fakes for the load-comparison tests.

Provides a stand-in for ``requests.Session`` and a Flask stub of the
login endpoint, so tests never reach a real backend.
"""

from __future__ import annotations

import threading
from collections.abc import Callable

from flask import Flask, jsonify, request

from loadtest_app.models import TestIdentity, UserCategory


class _FakeResponse:
    """Minimal stand-in for ``requests.Response``; only the status is read."""

    def __init__(self, status_code: int):
        self.status_code = status_code


class FakeSession:
    """
    Stand-in for ``requests.Session`` whose ``post`` answers via *responder*.

    The responder receives the URL and JSON payload and returns a status
    code or raises a ``requests`` exception.
    """

    def __init__(self, responder: Callable[[str, dict], int]):
        self._responder = responder
        self.calls: list[dict] = []
        self._lock = threading.Lock()

    def post(self, url, json=None, headers=None, timeout=None):
        with self._lock:
            self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return _FakeResponse(self._responder(url, json))


def correct_backend(identities: list[TestIdentity]) -> Callable[[str, dict], int]:
    """Responder that answers like a healthy backend for *identities*."""
    statuses = {identity.username: identity.expected_status for identity in identities}
    return lambda url, payload: statuses.get(payload["username"], 401)


def create_stub_backend(identities: list[TestIdentity]) -> Flask:
    """
    Build a Flask app exposing ``POST /login`` for *identities*.

    Valid credentials get ``200`` with a token; anything else ``401``.
    """
    app = Flask(__name__)
    passwords = {
        identity.username: identity.password
        for identity in identities
        if identity.category is not UserCategory.INVALID
    }

    @app.route("/login", methods=["POST"])
    def login():
        data = request.get_json(silent=True) or {}
        username = data.get("username", "")
        if passwords.get(username) != data.get("password"):
            return jsonify({"error": "Invalid username or password"}), 401
        return jsonify({"token": f"token-{username}"}), 200

    return app
