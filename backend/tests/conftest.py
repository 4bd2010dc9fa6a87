from __future__ import annotations

import pytest

from shared.config.settings import (
    ApplicationSettings,
    Environment,
    ObservabilitySettings,
    RetrySettings,
    SessionSettings,
)
from shared.testing.fulfillment_doubles import (
    InMemoryAllocationRegistry,
    InMemoryDatabase,
    InMemoryPostgresStore,
    InMemoryProcessedEventRegistry,
    InMemoryPurchaseRegistry,
    InMemorySessionRegistry,
    RecordingPublisher,
    RecordingSleep,
)


@pytest.fixture
def settings() -> ApplicationSettings:
    """Isolated settings: no jitter, no background sweep."""
    return ApplicationSettings(
        environment=Environment.TEST,
        retry=RetrySettings(retry_jitter=False),
        session=SessionSettings(session_sweep_enabled=False),
        observability=ObservabilitySettings(metrics_port=0),
    )


@pytest.fixture
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def store(db: InMemoryDatabase) -> InMemoryPostgresStore:
    return InMemoryPostgresStore(db)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def ledger() -> InMemoryProcessedEventRegistry:
    return InMemoryProcessedEventRegistry()


@pytest.fixture
def purchases() -> InMemoryPurchaseRegistry:
    return InMemoryPurchaseRegistry()


@pytest.fixture
def allocations() -> InMemoryAllocationRegistry:
    return InMemoryAllocationRegistry()


@pytest.fixture
def sessions() -> InMemorySessionRegistry:
    return InMemorySessionRegistry()
