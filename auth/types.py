"""Pydantic models for auth domain."""

import hmac
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

# Defaults for the usage counters every new account starts with.
DEFAULT_AI_CHATS_LIMIT = 10


class User(BaseModel):
    """A registered user of the system."""

    id: UUID
    email: EmailStr
    name: str | None = None
    is_active: bool = True
    magic_link_token: str | None = None
    magic_link_expiration: datetime | None = None
    created_at: datetime
    updated_at: datetime
    last_login_at: datetime | None = None

    # Usage counters owned by feature code; only initialized here.
    ai_chats_used: int = 0
    ai_chats_limit: int = DEFAULT_AI_CHATS_LIMIT
    total_conversations: int = 0

    model_config = {"from_attributes": True}

    def has_valid_magic_link(self, token: str, now: datetime) -> bool:
        """True iff the stored token equals `token` and has not yet expired."""
        if not self.magic_link_token or self.magic_link_expiration is None:
            return False
        if now >= self.magic_link_expiration:
            return False
        return hmac.compare_digest(self.magic_link_token.encode(), token.encode())


class MagicLinkToken(BaseModel):
    """A freshly issued magic link token and its expiry."""

    token: str = Field(..., description="URL-safe opaque token", min_length=32)
    expires_at: datetime


class VerifiedIdentity(BaseModel):
    """Identity established by redeeming a magic link."""

    id: UUID
    email: EmailStr
    name: str | None = None
    is_active: bool


class SessionIdentity(BaseModel):
    """Identity carried by a verified session credential."""

    user_id: UUID
    email: EmailStr
    name: str | None = None
    issued_at: datetime
    expires_at: datetime


class IssuedSession(BaseModel):
    """A freshly minted session credential."""

    token: str
    issued_at: datetime
    expires_at: datetime


# =============================================================================
# REQUEST BODIES
# =============================================================================


class _EmailRequest(BaseModel):
    """Body carrying an email address, trimmed and case-folded before validation."""

    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class LoginRequest(_EmailRequest):
    """Request payload for POST /auth/login."""


class MagicLinkRequest(_EmailRequest):
    """Request payload for POST /auth/magic-link."""

    name: str | None = Field(default=None, max_length=200)


class RegisterRequest(_EmailRequest):
    """Request payload for POST /auth/register."""

    name: str | None = Field(default=None, max_length=200)


class VerifyRequest(BaseModel):
    """Request payload for POST /auth/verify."""

    token: str = Field(..., min_length=1, max_length=512)
