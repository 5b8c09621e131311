"""Pytest configuration, Hypothesis profiles and shared fixtures."""

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import settings

from outpost.core.handler import HandlerRegistry
from outpost.stores.memory import InMemoryMessageStore

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")

EPOCH = datetime(2024, 1, 1, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock so retry timing can be asserted exactly."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()
