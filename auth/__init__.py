"""Passwordless (magic link) authentication."""

from auth.exceptions import (
    AuthError,
    InvalidRequestError,
    InvalidTokenError,
    NotAuthenticatedError,
    UserAlreadyExistsError,
    UserInactiveError,
    UserNotFoundError,
)
from auth.types import (
    User,
    MagicLinkToken,
    VerifiedIdentity,
    SessionIdentity,
    IssuedSession,
    LoginRequest,
    MagicLinkRequest,
    RegisterRequest,
    VerifyRequest,
)
from auth.config import AuthConfig
from auth.directory import UserDirectory, PostgresUserDirectory, InMemoryUserDirectory
from auth.tokens import TokenIssuer
from auth.security_logger import SecurityLogger, SecurityEvent, SecurityEventRecord
from auth.session import SessionIssuer, SessionAuthenticator
from auth.service import AuthService, MagicLinkResult, normalize_email
from auth.security_middleware import AuthMiddleware
from auth.api import create_auth_router
