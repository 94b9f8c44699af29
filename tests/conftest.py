"""Shared test fixtures for the termrelay test suite.

Wires the in-memory doubles from ``doubles`` into sessions and
registries, so session logic can be tested without spawning real
processes.
"""

from __future__ import annotations

import random

import pytest

from doubles import FakeClock, FakeSpawner, RecordingSink, failing_spawner
from termrelay.config.settings import ProcessConfig
from termrelay.session.registry import SessionRegistry
from termrelay.session.responder import SimulatedResponder
from termrelay.session.session import Session


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def process_config() -> ProcessConfig:
    return ProcessConfig(command="fake-cli")


@pytest.fixture
def responder() -> SimulatedResponder:
    """A responder with short, bounded delays and a fixed seed."""
    return SimulatedResponder(delay_min=0.05, delay_max=0.15, rng=random.Random(7))


@pytest.fixture
def fake_spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_registry(process_config: ProcessConfig, responder: SimulatedResponder, clock: FakeClock):
    """Build a registry whose sessions use the given spawner."""

    def _make(spawner=failing_spawner) -> SessionRegistry:
        def factory(identity: str, owner: SessionRegistry) -> Session:
            return Session(
                identity,
                process_config,
                responder,
                spawner=spawner,
                registry=owner,
                clock=clock,
            )

        return SessionRegistry(factory, clock=clock)

    return _make
