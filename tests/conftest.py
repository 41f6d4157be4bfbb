"""Pytest configuration and fixtures shared across all test modules.

Environment variables are set before any import that might build settings,
so the global Settings instance sees test values.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-api-key-123,test-api-key-456")
os.environ.setdefault("APP_RATE_LIMIT_CLEANUP_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from throttle.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from throttle.core.app_factory import create_app


@pytest.fixture
def clock() -> Mock:
    """Deterministic clock returning UNIX seconds; set ``return_value`` to advance."""
    return Mock(return_value=1_000.0)


@pytest.fixture
def limiter(clock: Mock) -> InMemoryFixedWindowRateLimiter:
    """Limiter on a fake clock with the cleanup sweep not started."""
    return InMemoryFixedWindowRateLimiter(clock=clock)


@pytest.fixture
def api_limiter(clock: Mock) -> InMemoryFixedWindowRateLimiter:
    """Limiter that throttles callers of the /v1 routes, on the same fake clock."""
    return InMemoryFixedWindowRateLimiter(clock=clock)


@pytest.fixture
def client(
    limiter: InMemoryFixedWindowRateLimiter, api_limiter: InMemoryFixedWindowRateLimiter
) -> TestClient:
    """Test client for an app that owns ``limiter`` and ``api_limiter``."""
    return TestClient(create_app(limiter=limiter, api_limiter=api_limiter))


@pytest.fixture
def valid_api_key_headers() -> dict[str, str]:
    """Create valid API key headers for authenticated requests."""
    return {"X-API-Key": "test-api-key-123"}
