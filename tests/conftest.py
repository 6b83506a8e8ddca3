"""Test configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from subagent_aggregator.core.domain.config_schema import AggregatorConfig
from subagent_aggregator.core.domain.session import SessionIdentity
from subagent_aggregator.infrastructure.messaging.in_memory_bus import InMemoryMessageBus

PARENT_SESSION_ID = "sess-4f2a9c71-0b1e"
TOOL_ID = "toolu_01ABC"


class FakeClock:
    """Deterministic clock advanced explicitly by tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> InMemoryMessageBus:
    return InMemoryMessageBus()


@pytest.fixture
def identity() -> SessionIdentity:
    return SessionIdentity(parent_session_id=PARENT_SESSION_ID, tool_id=TOOL_ID)


@pytest.fixture
def config() -> AggregatorConfig:
    """Configuration without automatic teardown, so tests close explicitly."""
    return AggregatorConfig(terminal_grace_seconds=None)


@pytest.fixture
def make_identity() -> Callable[..., SessionIdentity]:
    def _make(tool_id: str = TOOL_ID, parent: str = PARENT_SESSION_ID) -> SessionIdentity:
        return SessionIdentity(parent_session_id=parent, tool_id=tool_id)

    return _make
