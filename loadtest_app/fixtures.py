"""
Test identity pool and sampling strategies.

The identity pool is loaded once at start-up and is read-only
afterwards, so both samplers below can be called from every worker
thread without extra locking.  Each sampler takes an optional
``random.Random`` so tests can seed it for reproducible runs.
"""

from __future__ import annotations

import random
from collections.abc import Iterable, Sequence
from typing import Any

from .errors import ConfigurationError
from .models import Backend, TestIdentity, UserCategory


def load_identities(rows: Iterable[Any]) -> list[TestIdentity]:
    """
    Build identities from run-file rows.

    Each row needs ``username``, ``password`` and ``category`` (``type``
    is accepted as an alias, matching older fixture files).

    Raises:
        ConfigurationError: If a row is malformed or names an unknown
            category.
    """
    identities: list[TestIdentity] = []
    for index, row in enumerate(rows):
        if isinstance(row, TestIdentity):
            identities.append(row)
            continue
        if not isinstance(row, dict):
            raise ConfigurationError(f"Identity #{index} must be a mapping")
        try:
            category = UserCategory(row.get("category", row.get("type")))
            identities.append(
                TestIdentity(
                    username=str(row["username"]),
                    password=str(row["password"]),
                    category=category,
                )
            )
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"Identity #{index} is invalid: {exc}") from exc
    return identities


class FixtureProvider:
    """
    Uniform random selection from the fixed identity pool.

    Args:
        identities: The pool; must not be empty.
        rng: Optional seeded generator.

    Raises:
        ConfigurationError: If the pool is empty.
    """

    def __init__(self, identities: Sequence[TestIdentity], rng: random.Random | None = None):
        if not identities:
            raise ConfigurationError("Identity pool must contain at least one identity")
        self._identities = tuple(identities)
        self._rng = rng or random.Random()

    @property
    def identities(self) -> tuple[TestIdentity, ...]:
        return self._identities

    def pick(self) -> TestIdentity:
        """Return one identity, uniformly at random and independent of earlier calls."""
        return self._rng.choice(self._identities)


class TargetSelector:
    """Uniform choice between the backends under comparison."""

    def __init__(self, backends: Sequence[Backend] = tuple(Backend), rng: random.Random | None = None):
        if not backends:
            raise ConfigurationError("At least one backend must be selectable")
        self._backends = tuple(backends)
        self._rng = rng or random.Random()

    def pick(self) -> Backend:
        return self._rng.choice(self._backends)
