"""Authentication service - orchestrates the magic link flow.

Three entry points issue links (login, send-me-a-link, register) and share
one issuance path; verification redeems a link exactly once.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from urllib.parse import urlencode
from uuid import UUID

from pydantic import EmailStr, TypeAdapter, ValidationError

from auth.config import AuthConfig
from auth.directory import UserDirectory
from auth.exceptions import (
    InvalidRequestError,
    InvalidTokenError,
    UserAlreadyExistsError,
    UserInactiveError,
    UserNotFoundError,
)
from auth.security_logger import SecurityLogger, SecurityEvent
from auth.tokens import TokenIssuer
from auth.types import User, VerifiedIdentity
from clients.email_client import EmailSender
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_email_adapter = TypeAdapter(EmailStr)


@dataclass
class MagicLinkResult:
    """Result of a link request. Never carries the token."""

    user: User
    created: bool


def normalize_email(email: str | None) -> str:
    """Trim, case-fold and validate an email address.

    Raises:
        InvalidRequestError: If the email is missing or malformed.
    """
    if email is None or not email.strip():
        raise InvalidRequestError("Email is required")
    normalized = email.strip().lower()
    try:
        return _email_adapter.validate_python(normalized)
    except ValidationError:
        raise InvalidRequestError("Invalid email format")


class AuthService:
    """Orchestrates magic link authentication.

    Handles:
    - Link requests (login, send-me-a-link with create-on-first-contact, register)
    - Token verification and one-time redemption
    - Profile lookup for an authenticated session
    """

    def __init__(
        self,
        config: AuthConfig,
        directory: UserDirectory,
        token_issuer: TokenIssuer,
        email_client: EmailSender,
        security_logger: SecurityLogger,
        clock: Callable[[], datetime] = now_utc,
    ):
        self._config = config
        self._directory = directory
        self._token_issuer = token_issuer
        self._email_client = email_client
        self._security_logger = security_logger
        self._clock = clock

    def _audit(self, event: SecurityEvent, **fields) -> None:
        """Append to the audit trail. A failed write is logged and never changes the request outcome."""
        try:
            self._security_logger.log(event, **fields)
        except Exception:
            logger.exception(f"Failed to record security event {event.value}")

    def build_callback_url(self, token: str) -> str:
        base = self._config.app_base_url.rstrip("/")
        return f"{base}/auth/verify?{urlencode({'token': token})}"

    # =========================================================================
    # LINK REQUESTS
    # =========================================================================

    def request_login_link(
        self,
        email: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> MagicLinkResult:
        """Send a magic link to an existing, active account.

        Raises:
            InvalidRequestError: Email missing or malformed.
            UserNotFoundError: No account for this email.
            UserInactiveError: Account is deactivated. No token is stored.
            EmailGatewayError: Delivery failed (token is already stored).
        """
        return self._request_link(
            email, name=None, allow_create=False, ip_address=ip_address, user_agent=user_agent
        )

    def request_magic_link(
        self,
        email: str,
        name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> MagicLinkResult:
        """Send a magic link, creating the account on first contact.

        An existing account takes the login path, so repeated calls with
        the same email never fail on account existence.

        Raises:
            InvalidRequestError: Email missing or malformed.
            UserInactiveError: Existing account is deactivated.
            EmailGatewayError: Delivery failed.
        """
        return self._request_link(
            email, name=name, allow_create=True, ip_address=ip_address, user_agent=user_agent
        )

    def register(
        self,
        email: str,
        name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> MagicLinkResult:
        """Create a new account and send it a magic link.

        Raises:
            InvalidRequestError: Email missing or malformed.
            UserAlreadyExistsError: Email already registered.
            EmailGatewayError: Delivery failed (the account remains).
        """
        email = normalize_email(email)

        if self._directory.get_user_by_email(email) is not None:
            raise UserAlreadyExistsError("An account with this email already exists")

        # A concurrent registration can still win the insert; create_user
        # raises UserAlreadyExistsError in that case.
        user = self._create_user(email, name, ip_address, user_agent)
        self._issue_link(user, ip_address, user_agent)
        return MagicLinkResult(user=user, created=True)

    def _request_link(
        self,
        email: str,
        name: str | None,
        allow_create: bool,
        ip_address: str | None,
        user_agent: str | None,
    ) -> MagicLinkResult:
        email = normalize_email(email)
        created = False

        user = self._directory.get_user_by_email(email)

        if user is None:
            if not allow_create:
                self._audit(
                    SecurityEvent.MAGIC_LINK_FAILED,
                    email=email,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details={"reason": "user_not_found"},
                )
                raise UserNotFoundError("No account found with this email")
            try:
                user = self._create_user(email, name, ip_address, user_agent)
                created = True
            except UserAlreadyExistsError:
                # Lost a creation race: the other request's account is ours too.
                user = self._directory.get_user_by_email(email)
                if user is None:
                    raise

        if not user.is_active:
            self._audit(
                SecurityEvent.MAGIC_LINK_FAILED,
                email=user.email,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": "user_inactive"},
            )
            raise UserInactiveError("Account is deactivated")

        self._issue_link(user, ip_address, user_agent)
        return MagicLinkResult(user=user, created=created)

    def _create_user(
        self,
        email: str,
        name: str | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> User:
        user = self._directory.create_user(email, name, self._clock())
        logger.info(f"Created user {user.id}")
        self._audit(
            SecurityEvent.USER_CREATED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user

    def _issue_link(self, user: User, ip_address: str | None, user_agent: str | None) -> None:
        """Persist a fresh token on the user, then deliver it.

        Order matters: if persisting fails no email goes out.
        """
        issued = self._token_issuer.issue()

        stored = self._directory.set_magic_link_token(
            user.id, issued.token, issued.expires_at, self._clock()
        )
        if not stored:
            raise RuntimeError(f"Failed to store magic link token for user {user.id}")

        self._audit(
            SecurityEvent.MAGIC_LINK_REQUESTED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        # May raise EmailGatewayError
        self._email_client.send_magic_link(user.email, self.build_callback_url(issued.token))

        self._audit(
            SecurityEvent.MAGIC_LINK_SENT,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
        )

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def verify_magic_link(
        self,
        token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> VerifiedIdentity:
        """Redeem a magic link token.

        Flow:
        1. Lookup user by token, unexpired only
        2. Re-check stored token and expiry on the located record
        3. Check user is active
        4. Conditionally clear the token and stamp last login
        5. Log security event

        Raises:
            InvalidRequestError: Token missing.
            InvalidTokenError: Token unknown, expired, or already used.
            UserInactiveError: Account is deactivated. The token is not consumed.
        """
        if not token:
            raise InvalidRequestError("Token is required")

        now = self._clock()
        user = self._directory.get_user_by_magic_link_token(token, now)

        if user is None or not user.has_valid_magic_link(token, now):
            self._audit(
                SecurityEvent.MAGIC_LINK_FAILED,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": "token_invalid_or_expired"},
            )
            raise InvalidTokenError()

        if not user.is_active:
            self._audit(
                SecurityEvent.MAGIC_LINK_FAILED,
                email=user.email,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": "user_inactive"},
            )
            raise UserInactiveError("Account is deactivated")

        redeemed = self._directory.redeem_magic_link_token(user.id, token, now)
        if redeemed is None:
            # Another request redeemed it, or a newer link replaced it, since lookup
            self._audit(
                SecurityEvent.MAGIC_LINK_FAILED,
                email=user.email,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": "token_already_consumed"},
            )
            raise InvalidTokenError()

        self._audit(
            SecurityEvent.MAGIC_LINK_VERIFIED,
            email=redeemed.email,
            user_id=redeemed.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        return VerifiedIdentity(
            id=redeemed.id,
            email=redeemed.email,
            name=redeemed.name,
            is_active=redeemed.is_active,
        )

    # =========================================================================
    # SESSION-SIDE HELPERS
    # =========================================================================

    def get_active_user(self, user_id: UUID) -> User | None:
        """Current record for an authenticated user, or None if gone or deactivated."""
        user = self._directory.get_user_by_id(user_id)
        if user is None or not user.is_active:
            return None
        return user

    def record_session_event(
        self,
        event: SecurityEvent,
        user_id: UUID,
        email: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Audit session creation/ending, which happens in the HTTP layer."""
        self._audit(
            event,
            email=email,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
