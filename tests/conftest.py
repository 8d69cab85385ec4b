"""Shared fixtures for Deribit HTTP client tests."""

import sys
from pathlib import Path

import pytest

# Add project root to path so we can import modules directly
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import ApiCredentials, HttpConfig  # noqa: E402
from session import AuthToken  # noqa: E402
from helpers import FakeClock  # noqa: E402

DERIBIT_ENV_VARS = (
    "DERIBIT_TESTNET", "DERIBIT_CLIENT_ID", "DERIBIT_CLIENT_SECRET", "DERIBIT_GRANT_TYPE",
    "DERIBIT_HTTP_TIMEOUT", "DERIBIT_HTTP_MAX_RETRIES", "DERIBIT_HTTP_USER_AGENT",
    "DERIBIT_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove any DERIBIT_* variables inherited from the shell.

    Setting before deleting makes monkeypatch restore the variables on
    teardown, so values loaded from .env files don't leak between tests.
    """
    for name in DERIBIT_ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


@pytest.fixture
def credentials():
    return ApiCredentials(client_id="test_client", client_secret="test_secret")


@pytest.fixture
def config(credentials):
    """Testnet config with credentials and no retry delay."""
    return HttpConfig(credentials=credentials, retry_delay=0.0)


@pytest.fixture
def sample_token():
    return AuthToken(
        access_token="abc",
        token_type="Bearer",
        expires_in=3600,
        refresh_token=None,
        scope="read",
    )


@pytest.fixture
def auth_result():
    """Result of a successful /public/auth call."""
    return {
        "access_token": "access_123",
        "expires_in": 900,
        "refresh_token": "refresh_456",
        "scope": "connection mainaccount",
        "token_type": "bearer",
    }


@pytest.fixture
def fake_clock():
    return FakeClock()
