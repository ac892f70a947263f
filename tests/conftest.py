"""Global test configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient

from motion_telemetry.config import ServerSettings
from motion_telemetry.main import create_app
from motion_telemetry.storage import InMemoryTelemetryStore
from tests.test_helpers import FixedClock


@pytest.fixture()
def clock():
    """Deterministic server clock."""
    return FixedClock()


@pytest.fixture()
def store():
    """Fresh in-memory store."""
    return InMemoryTelemetryStore()


@pytest.fixture()
def server_settings():
    return ServerSettings(database_url=None, log_format="console", _env_file=None)


@pytest.fixture()
def app(server_settings, store, clock):
    """Application wired to the in-memory store and fixed clock."""
    return create_app(server_settings, store=store, clock=clock)


@pytest.fixture()
def client(app):
    """Test client fixture."""
    with TestClient(app) as client:
        yield client
