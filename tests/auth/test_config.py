"""Tests for auth/config.py - Auth configuration with validation."""

import pytest
from pydantic import ValidationError

from auth.config import AuthConfig

SECRET = "x" * 32


class TestAuthConfigDefaults:
    """Tests that AuthConfig has sensible defaults."""

    def test_magic_link_expiry_default(self):
        config = AuthConfig(session_secret=SECRET)
        assert config.magic_link_expiry_minutes == 15

    def test_session_expiry_default(self):
        config = AuthConfig(session_secret=SECRET)
        assert config.session_expiry_days == 7
        assert config.session_max_age_seconds == 604800

    def test_cookie_defaults(self):
        config = AuthConfig(session_secret=SECRET)
        assert config.session_cookie_name == "auth-token"
        assert config.cookie_secure is None

    def test_algorithm_default(self):
        assert AuthConfig(session_secret=SECRET).session_algorithm == "HS256"


class TestAuthConfigValidation:
    """Tests that AuthConfig enforces validation bounds."""

    def test_secret_required(self):
        with pytest.raises(ValidationError):
            AuthConfig()

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError, match="at least 32"):
            AuthConfig(session_secret="too-short")

    def test_secret_not_shown_in_repr(self):
        config = AuthConfig(session_secret=SECRET)
        assert SECRET not in repr(config)

    def test_magic_link_expiry_min_bound(self):
        with pytest.raises(ValidationError):
            AuthConfig(session_secret=SECRET, magic_link_expiry_minutes=4)  # < 5

    def test_magic_link_expiry_max_bound(self):
        with pytest.raises(ValidationError):
            AuthConfig(session_secret=SECRET, magic_link_expiry_minutes=61)  # > 60

    def test_session_expiry_min_bound(self):
        with pytest.raises(ValidationError):
            AuthConfig(session_secret=SECRET, session_expiry_days=0)  # < 1

    def test_session_expiry_max_bound(self):
        with pytest.raises(ValidationError):
            AuthConfig(session_secret=SECRET, session_expiry_days=91)  # > 90

    def test_asymmetric_algorithm_rejected(self):
        with pytest.raises(ValidationError):
            AuthConfig(session_secret=SECRET, session_algorithm="RS256")
