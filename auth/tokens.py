"""Magic link token generation."""

import secrets
from datetime import datetime, timedelta
from typing import Callable

from auth.config import AuthConfig
from auth.types import MagicLinkToken
from utils.timezone import now_utc

# 32 random bytes -> 43 URL-safe characters
TOKEN_BYTES = 32


class TokenIssuer:
    """Issues opaque, single-use magic link tokens with a fixed TTL."""

    def __init__(self, config: AuthConfig, clock: Callable[[], datetime] = now_utc):
        self._ttl = timedelta(minutes=config.magic_link_expiry_minutes)
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def issue(self) -> MagicLinkToken:
        """Generate a fresh token from the OS CSPRNG, expiring one TTL from now."""
        return MagicLinkToken(
            token=secrets.token_urlsafe(TOKEN_BYTES),
            expires_at=self._clock() + self._ttl,
        )
