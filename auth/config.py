"""Authentication configuration."""

from pydantic import BaseModel, Field, SecretStr, field_validator


class AuthConfig(BaseModel):
    """
    Authentication configuration, built once at startup.

    Durations are in their natural units (minutes for magic links, days for
    sessions). The signing secret comes from Vault in production.
    """

    # Session credential signing
    session_secret: SecretStr = Field(
        ...,
        description="HMAC key for signing session credentials",
    )
    session_algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm",
        pattern=r"^HS(256|384|512)$",
    )

    # Magic link settings
    magic_link_expiry_minutes: int = Field(
        default=15,
        description="How long magic links remain valid",
        ge=5,
        le=60,
    )

    # Session settings
    session_expiry_days: int = Field(
        default=7,
        description="Lifetime of a session credential in days",
        ge=1,
        le=90,
    )
    session_cookie_name: str = Field(
        default="auth-token",
        description="Cookie carrying the session credential",
    )
    cookie_secure: bool | None = Field(
        default=None,
        description="Force the Secure cookie flag. None derives it from the request scheme.",
    )

    # Application
    app_base_url: str = Field(
        default="http://localhost:3000",
        description="Base URL for magic link generation",
    )
    app_name: str = Field(
        default="Unsent",
        description="Application name for emails",
    )

    @field_validator("session_secret")
    @classmethod
    def _secret_long_enough(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < 32:
            raise ValueError("session_secret must be at least 32 characters")
        return value

    @property
    def session_max_age_seconds(self) -> int:
        return self.session_expiry_days * 24 * 3600
