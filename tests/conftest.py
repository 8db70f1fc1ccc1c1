"""
Shared pytest fixtures and helpers for pathbus tests.
"""

from typing import Any, List, Tuple

import pytest

from pathbus import DataBus, Provider


class RecordingProvider(Provider):
    """Provider that records every hook call as (event, path)."""

    def __init__(self, name: str = "provider", fail_on: Tuple[str, ...] = ()):
        self.name = name
        self.fail_on = set(fail_on)
        self.events: List[Tuple[str, Tuple[str, ...]]] = []
        self.contexts = []

    def on_activate(self, ctx):
        self.events.append(("activate", ctx.path))
        self.contexts.append(ctx)
        if "activate" in self.fail_on:
            raise RuntimeError(f"{self.name} cannot activate")

    def on_deactivate(self, ctx):
        self.events.append(("deactivate", ctx.path))
        if "deactivate" in self.fail_on:
            raise RuntimeError(f"{self.name} cannot deactivate")

    def on_resync(self, ctx):
        self.events.append(("resync", ctx.path))

    def count(self, event: str, path=None) -> int:
        return sum(
            1 for e, p in self.events if e == event and (path is None or p == tuple(path))
        )

    def __repr__(self):
        return f"RecordingProvider({self.name!r})"


class Recorder:
    """Subscriber callback that keeps every (new, old, path) call."""

    def __init__(self):
        self.calls: List[Tuple[Any, Any, Tuple[str, ...]]] = []

    def __call__(self, new, old, path):
        self.calls.append((new, old, path))

    @property
    def values(self) -> List[Any]:
        return [new for new, _, _ in self.calls]


@pytest.fixture
def bus():
    """Provide a fresh DataBus, closed after the test."""
    instance = DataBus()
    yield instance
    instance.close()


@pytest.fixture
def strict_bus():
    """A bus that raises on double dispose and rejects late registration."""
    instance = DataBus(raise_on_double_dispose=True, late_registration="reject")
    yield instance
    instance.close()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_provider():
    """Factory for RecordingProvider instances."""
    return RecordingProvider
