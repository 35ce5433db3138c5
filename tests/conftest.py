"""Pytest configuration and fixtures."""

import pytest

from config.sync_config import SyncSettings
from services.property_store import InMemoryPropertyStore
from tests.factories import (
    FakeClock,
    FakeSession,
    RecordingStore,
    make_provider_config,
    make_record,
)


@pytest.fixture
def record_factory():
    """Factory building complete, plausible listings."""
    return make_record


@pytest.fixture
def provider_config():
    """Enabled custom-family provider with two records per page."""
    return make_provider_config()


@pytest.fixture
def session() -> FakeSession:
    """Scripted HTTP session."""
    return FakeSession()


@pytest.fixture
def clock() -> FakeClock:
    """Controllable clock whose sleep() returns immediately."""
    return FakeClock()


@pytest.fixture
def store() -> InMemoryPropertyStore:
    """Create a fresh store for each test."""
    return InMemoryPropertyStore()


@pytest.fixture
def recording_store() -> RecordingStore:
    """Store that keeps every persisted run snapshot."""
    return RecordingStore()


@pytest.fixture
def settings() -> SyncSettings:
    """Fast retry settings."""
    return SyncSettings(max_retries=3, retry_base_delay=1.0, retry_max_delay=4.0)
