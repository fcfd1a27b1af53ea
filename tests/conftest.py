"""Shared test fixtures for the auth service test suite."""

import pytest
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import Mock

from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
load_dotenv(Path(__file__).parent.parent / ".env")

# Reset vault client singleton so tests never reuse a real client
from clients.vault_client import reset_vault_state
reset_vault_state()

from auth.config import AuthConfig
from auth.directory import InMemoryUserDirectory
from auth.security_logger import SecurityLogger
from auth.service import AuthService
from auth.session import SessionAuthenticator, SessionIssuer
from auth.tokens import TokenIssuer
from clients.email_client import EmailGatewayClient
from utils.timezone import now_utc
from utils.user_context import clear_current_user_id


# =============================================================================
# TEST CONSTANTS
# =============================================================================

TEST_SESSION_SECRET = "test-session-secret-0123456789abcdef"
TEST_APP_URL = "https://test.example.com"
TEST_USER_EMAIL = "testuser@example.com"
TEST_USER_B_EMAIL = "testuser-b@example.com"


class FakeClock:
    """Settable clock. Starts at the real current time so JWT exp checks agree."""

    def __init__(self, start: datetime | None = None):
        self.now = start or now_utc()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# USER CONTEXT FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def reset_user_context():
    """Ensure clean user context before and after each test."""
    clear_current_user_id()
    yield
    clear_current_user_id()


# =============================================================================
# AUTH FIXTURES
# =============================================================================


@pytest.fixture
def config():
    """Test auth config."""
    return AuthConfig(
        session_secret=TEST_SESSION_SECRET,
        magic_link_expiry_minutes=15,
        session_expiry_days=7,
        app_base_url=TEST_APP_URL,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def directory():
    """In-process user directory."""
    return InMemoryUserDirectory()


@pytest.fixture
def mock_email_client():
    """Mock email client - delivery is the only outbound call."""
    mock = Mock(spec=EmailGatewayClient)
    mock.send_magic_link.return_value = None
    return mock


@pytest.fixture
def mock_security_logger():
    """Mock security logger - the audit trail needs PostgreSQL."""
    return Mock(spec=SecurityLogger)


@pytest.fixture
def token_issuer(config, clock):
    return TokenIssuer(config, clock=clock)


@pytest.fixture
def auth_service(config, directory, token_issuer, mock_email_client, mock_security_logger, clock):
    """Real AuthService over the in-memory directory, mocked email and audit log."""
    return AuthService(
        config=config,
        directory=directory,
        token_issuer=token_issuer,
        email_client=mock_email_client,
        security_logger=mock_security_logger,
        clock=clock,
    )


@pytest.fixture
def session_issuer(config):
    return SessionIssuer(config)


@pytest.fixture
def session_authenticator(config):
    return SessionAuthenticator(config)


@pytest.fixture
def sent_token(mock_email_client):
    """Pull the token out of the most recently emailed magic link URL."""
    from urllib.parse import parse_qs, urlparse

    def _sent_token() -> str:
        url = mock_email_client.send_magic_link.call_args.args[1]
        return parse_qs(urlparse(url).query)["token"][0]

    return _sent_token


@pytest.fixture
def app(auth_service, session_issuer, session_authenticator):
    """Fully wired FastAPI app."""
    from main import create_app

    return create_app(auth_service, session_issuer, session_authenticator)
