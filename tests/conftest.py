"""
Pytest configuration and shared fixtures.

Contains common test fixtures and setup for all test modules.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generator

import pytest
from fastapi.testclient import TestClient

from lognexus.config import AuditSettings, OptimizerSettings, SecuritySettings, Settings
from lognexus.core.events import Event, EventBus
from lognexus.main import create_app
from lognexus.models.log_record import LogRecord

VALID_TOKEN = "test_token_valid_123456789abc"
INACTIVE_TOKEN = "test_token_inactive_123456789"
ADMIN_TOKEN = "test_admin_token_123456789abc"

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock for rule engines and audit chains."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Manually advanced monotonic clock (seconds) for caches and optimizers."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list = []
        bus.subscribe(Event, self.events.append)

    def of_type(self, event_type: type) -> list:
        return [event for event in self.events if isinstance(event, event_type)]


@pytest.fixture
def make_record() -> Callable[..., LogRecord]:
    """Factory for records offset from a fixed base time."""
    def _make(
        level: str = "INFO",
        message: str = "request completed",
        service: str = "api",
        offset_ms: float = 0,
        **kwargs: Any,
    ) -> LogRecord:
        return LogRecord(
            level=level,
            message=message,
            service=service,
            timestamp=BASE_TIME + timedelta(milliseconds=offset_ms),
            **kwargs,
        )
    return _make


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with test tokens and no retention interference."""
    return Settings(
        security=SecuritySettings(
            admin_token=ADMIN_TOKEN,
            api_keys={
                VALID_TOKEN: {"name": "test-service", "active": True},
                INACTIVE_TOKEN: {"name": "inactive-service", "active": False},
            },
        ),
        audit=AuditSettings(secret_key="test-secret", retention_policies=[]),
        optimizer=OptimizerSettings(
            batch_size=1000,
            flush_interval_ms=60000,
            max_memory_bytes=1024 ** 4,
        ),
    )


@pytest.fixture
def test_client(test_settings: Settings) -> Generator[TestClient, None, None]:
    """FastAPI test client running the full lifespan."""
    app = create_app(test_settings)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {VALID_TOKEN}"}


@pytest.fixture
def inactive_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {INACTIVE_TOKEN}"}


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def valid_record() -> Dict[str, Any]:
    """Sample valid record payload."""
    return {
        "timestamp": "2026-01-01T12:00:00.000Z",
        "level": "INFO",
        "message": "Test log message",
        "service": "test-service",
        "context": {"action": "login"},
    }
