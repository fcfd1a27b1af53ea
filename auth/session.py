"""Session credentials.

Sessions are stateless: the credential is an HS256 JWT carrying the user's
id, email and name plus iat/exp, delivered in an HttpOnly cookie. The
server keeps no session store; a credential is valid until it expires or
the client discards it.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

import jwt
from pydantic import ValidationError
from starlette.requests import HTTPConnection

from auth.config import AuthConfig
from auth.types import IssuedSession, SessionIdentity, VerifiedIdentity
from utils.timezone import from_timestamp, now_utc

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["userId", "email", "iat", "exp"]


class SessionIssuer:
    """Mints signed session credentials and describes their cookie transport."""

    def __init__(self, config: AuthConfig, clock: Callable[[], datetime] = now_utc):
        self._config = config
        self._clock = clock

    def mint(self, identity: VerifiedIdentity) -> IssuedSession:
        """Sign a credential for `identity`, valid for the configured window."""
        # JWT timestamps have one-second resolution
        issued_at = from_timestamp(int(self._clock().timestamp()))
        expires_at = issued_at + timedelta(days=self._config.session_expiry_days)

        claims = {
            "userId": str(identity.id),
            "email": identity.email,
            "name": identity.name,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(
            claims,
            self._config.session_secret.get_secret_value(),
            algorithm=self._config.session_algorithm,
        )
        return IssuedSession(token=token, issued_at=issued_at, expires_at=expires_at)

    def is_secure_transport(self, connection: HTTPConnection) -> bool:
        """Whether the Secure flag applies: forced by config, else from scheme or proxy header."""
        if self._config.cookie_secure is not None:
            return self._config.cookie_secure
        forwarded = connection.headers.get("x-forwarded-proto", "")
        return connection.url.scheme == "https" or forwarded.split(",")[0].strip() == "https"

    def cookie_params(self, secure: bool) -> dict[str, Any]:
        """Keyword arguments for Response.set_cookie (value excluded).

        No domain is set, so the cookie is host-only.
        """
        return {
            "key": self._config.session_cookie_name,
            "httponly": True,
            "samesite": "lax",
            "secure": secure,
            "max_age": self._config.session_max_age_seconds,
            "path": "/",
        }


class SessionAuthenticator:
    """Verifies inbound session credentials. Never raises for bad input."""

    def __init__(self, config: AuthConfig):
        self._config = config

    def authenticate(self, token: str | None) -> SessionIdentity | None:
        """Return the identity in a valid credential, or None."""
        if not token:
            return None

        try:
            claims = jwt.decode(
                token,
                self._config.session_secret.get_secret_value(),
                algorithms=[self._config.session_algorithm],
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Session credential expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected session credential: {e}")
            return None

        try:
            return SessionIdentity(
                user_id=claims["userId"],
                email=claims["email"],
                name=claims.get("name"),
                issued_at=from_timestamp(claims["iat"]),
                expires_at=from_timestamp(claims["exp"]),
            )
        except (ValidationError, TypeError, ValueError) as e:
            logger.info(f"Session credential has malformed claims: {e}")
            return None

    def extract_token(self, connection: HTTPConnection) -> str | None:
        """Session cookie first, then an Authorization: Bearer header."""
        token = connection.cookies.get(self._config.session_cookie_name)
        if token:
            return token

        auth_header = connection.headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            return auth_header[len("Bearer "):].strip() or None

        return None

    def authenticate_request(self, connection: HTTPConnection) -> SessionIdentity | None:
        """Authenticate the caller of an inbound request."""
        return self.authenticate(self.extract_token(connection))
