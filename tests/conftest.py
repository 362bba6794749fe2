"""
Pytest configuration and fixtures for the storefront security pipeline.
Every fixture builds its own event log and application so tests never share
rate-limit counters or suspicion state.
"""
import os
import pytest
from typing import Dict, Any, List

# Set testing environment variables before importing
os.environ["ENVIRONMENT"] = "test"
os.environ["FILE_LOGGING_ENABLED"] = "false"
os.environ["SECURITY_ADMIN_TOKEN"] = "test-admin-token-0123456789abcdef"

from fastapi import Depends
from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from middleware.rate_limiting import RateLimitRegistry
from middleware.security_monitoring import log_auth_activity, log_user_action
from middleware.ssrf_protection import URLGuard
from middleware.validation import Sanitizer
from monitoring.logger import LogSink
from security.security_monitoring_system import SecurityEventLog

ADMIN_TOKEN = os.environ["SECURITY_ADMIN_TOKEN"]


class FakeClock:
    """Manually advanced clock for window tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEventLog:
    """Event log double that keeps every recorded call."""

    def __init__(self):
        self.records: List[Dict[str, Any]] = []

    def record(self, event_type, severity, details=None, client=None, request=None, _score=True):
        self.records.append({
            "event_type": getattr(event_type, "value", event_type),
            "severity": severity,
            "details": details or {},
            "client": client,
        })

    def types(self) -> List[str]:
        return [entry["event_type"] for entry in self.records]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quiet_sink():
    """Sink with files and console disabled."""
    sink = LogSink(file_logging=False, console=False, environment="test")
    yield sink
    sink.close()


@pytest.fixture
def event_log(quiet_sink, clock):
    return SecurityEventLog(sink=quiet_sink, threshold=10, window_seconds=900, buffer_size=100, clock=clock)


@pytest.fixture
def recording_log():
    return RecordingEventLog()


@pytest.fixture
def sanitizer(recording_log):
    return Sanitizer(recording_log)


@pytest.fixture
def production_guard(recording_log):
    return URLGuard.from_settings(Settings(ENVIRONMENT="production", SECURITY_ADMIN_TOKEN=ADMIN_TOKEN), recording_log)


@pytest.fixture
def development_guard(recording_log):
    return URLGuard.from_settings(Settings(ENVIRONMENT="development"), recording_log)


@pytest.fixture
def registry(recording_log, clock):
    return RateLimitRegistry(recording_log, trusted_addresses=["10.0.0.5"], clock=clock)


@pytest.fixture
def test_settings():
    return Settings(ENVIRONMENT="test", FILE_LOGGING_ENABLED=False, SECURITY_ADMIN_TOKEN=ADMIN_TOKEN)


def add_storefront_routes(application):
    """Stand-in storefront routes behind the pipeline."""

    @application.post("/api/user/login", dependencies=[Depends(log_auth_activity("login_attempt"))])
    async def login(payload: Dict[str, Any]):
        return {"success": True, "received": payload}

    @application.post("/api/product/echo")
    async def echo(payload: Dict[str, Any]):
        return {"success": True, "received": payload}

    @application.get("/api/product/list")
    async def list_products(category: str = "all"):
        return {"success": True, "category": category}

    @application.put("/api/user/profile", dependencies=[Depends(log_user_action("profile_update"))])
    async def update_profile(payload: Dict[str, Any]):
        return {"success": True}

    @application.post("/api/order/stripe")
    async def place_order(payload: Dict[str, Any]):
        return {"success": True}

    return application


@pytest.fixture
def app(test_settings, event_log):
    return add_storefront_routes(create_app(test_settings, event_log))


@pytest.fixture
def client(app):
    """Test client for FastAPI app with proper setup."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_client(event_log):
    """Build a client for an app configured with extra settings."""
    clients = []

    def _make(**overrides):
        app_settings = Settings(
            ENVIRONMENT="test", FILE_LOGGING_ENABLED=False, SECURITY_ADMIN_TOKEN=ADMIN_TOKEN, **overrides
        )
        test_client = TestClient(add_storefront_routes(create_app(app_settings, event_log)))
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    yield _make
    for test_client in clients:
        test_client.__exit__(None, None, None)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}


# Custom markers for test categorization
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "security: mark test as security related")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
