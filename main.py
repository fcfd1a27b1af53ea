"""Application entry point: wires clients, auth services and routes into a FastAPI app."""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI

from api.errors import register_error_handlers
from api.middleware import RequestIDMiddleware
from auth.api import create_auth_router
from auth.config import AuthConfig
from auth.directory import PostgresUserDirectory
from auth.security_logger import SecurityLogger
from auth.security_middleware import AuthMiddleware
from auth.service import AuthService
from auth.session import SessionAuthenticator, SessionIssuer
from auth.tokens import TokenIssuer
from clients.email_client import EmailGatewayClient, EmailSender, LoggingEmailSender
from clients.postgres_client import PostgresClient
from clients.vault_client import get_database_url, get_email_config, get_session_secret

logger = logging.getLogger(__name__)


def create_app(
    auth_service: AuthService,
    session_issuer: SessionIssuer,
    session_authenticator: SessionAuthenticator,
) -> FastAPI:
    """Assemble the app from already-built services."""
    app = FastAPI(title="Unsent Auth")

    register_error_handlers(app)

    # Added last = outermost: request IDs exist before auth runs
    app.add_middleware(AuthMiddleware, session_authenticator=session_authenticator)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(
        create_auth_router(auth_service, session_issuer, session_authenticator),
        prefix="/auth",
    )

    @app.get("/health", tags=["health"])
    def health():
        return {"status": "ok"}

    return app


def _env_bool(name: str) -> bool | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config() -> AuthConfig:
    """AuthConfig from Vault (secret) and environment (tunables)."""
    overrides = {}
    if os.getenv("APP_BASE_URL"):
        overrides["app_base_url"] = os.environ["APP_BASE_URL"]
    if os.getenv("MAGIC_LINK_EXPIRY_MINUTES"):
        overrides["magic_link_expiry_minutes"] = int(os.environ["MAGIC_LINK_EXPIRY_MINUTES"])
    if os.getenv("SESSION_EXPIRY_DAYS"):
        overrides["session_expiry_days"] = int(os.environ["SESSION_EXPIRY_DAYS"])
    cookie_secure = _env_bool("COOKIE_SECURE")
    if cookie_secure is not None:
        overrides["cookie_secure"] = cookie_secure

    return AuthConfig(session_secret=get_session_secret(), **overrides)


def build_email_sender(config: AuthConfig) -> EmailSender:
    """Gateway client from Vault credentials, or the console sender if EMAIL_DELIVERY=console."""
    delivery = os.getenv("EMAIL_DELIVERY", "gateway").strip().lower()
    if delivery == "console":
        logger.warning("EMAIL_DELIVERY=console: magic links are logged, not emailed")
        return LoggingEmailSender()
    if delivery != "gateway":
        raise ValueError(f"EMAIL_DELIVERY must be 'gateway' or 'console', got '{delivery}'")
    return EmailGatewayClient(app_name=config.app_name, **get_email_config())


def build_app() -> FastAPI:
    """Production wiring. Fails fast if Vault or PostgreSQL is unreachable."""
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config()
    postgres = PostgresClient(get_database_url())
    email_client = build_email_sender(config)

    auth_service = AuthService(
        config=config,
        directory=PostgresUserDirectory(postgres),
        token_issuer=TokenIssuer(config),
        email_client=email_client,
        security_logger=SecurityLogger(postgres),
    )

    logger.info(f"Auth service configured for {config.app_base_url}")
    return create_app(
        auth_service=auth_service,
        session_issuer=SessionIssuer(config),
        session_authenticator=SessionAuthenticator(config),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:build_app",
        factory=True,
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )
