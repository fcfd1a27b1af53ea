"""HTTP routes for authentication.

Handlers are plain functions: the service does blocking I/O, so FastAPI
runs them in its threadpool rather than on the event loop.
"""

import ipaddress

from fastapi import APIRouter, Request, Response

from api.base import request_id_of, success_response
from auth.exceptions import NotAuthenticatedError
from auth.security_logger import SecurityEvent
from auth.service import AuthService
from auth.session import SessionAuthenticator, SessionIssuer
from auth.types import (
    LoginRequest,
    MagicLinkRequest,
    RegisterRequest,
    SessionIdentity,
    User,
    VerifyRequest,
)

LINK_SENT_MESSAGE = "Magic link sent! Please check your email to access your account."


def _get_client_ip(request: Request) -> str | None:
    """Extract valid IP address from request, or None if invalid."""
    if not request.client:
        return None
    host = request.client.host
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        return None


def _user_summary(user: User) -> dict:
    return {
        "email": user.email,
        "name": user.name,
        "ai_chats_used": user.ai_chats_used,
        "ai_chats_limit": user.ai_chats_limit,
    }


def _user_profile(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
        "is_active": user.is_active,
        "created_at": user.created_at.isoformat(),
        "updated_at": user.updated_at.isoformat(),
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
        "ai_chats_used": user.ai_chats_used,
        "ai_chats_limit": user.ai_chats_limit,
        "ai_chats_remaining": max(user.ai_chats_limit - user.ai_chats_used, 0),
        "total_conversations": user.total_conversations,
    }


def create_auth_router(
    auth_service: AuthService,
    session_issuer: SessionIssuer,
    session_authenticator: SessionAuthenticator,
) -> APIRouter:
    """Create auth router with injected collaborators."""
    router = APIRouter(tags=["auth"])

    def _identity(request: Request) -> SessionIdentity | None:
        # AuthMiddleware may already have verified the credential
        identity = getattr(request.state, "identity", None)
        if identity is not None:
            return identity
        return session_authenticator.authenticate_request(request)

    @router.post("/login")
    def login(request: Request, body: LoginRequest):
        """Send a magic link to an existing account.

        Errors: 404 no account, 403 deactivated.
        """
        result = auth_service.request_login_link(
            email=body.email,
            ip_address=_get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        return success_response(
            {"message": LINK_SENT_MESSAGE, "user": _user_summary(result.user)},
            request_id_of(request),
        )

    @router.post("/register", status_code=201)
    def register(request: Request, body: RegisterRequest):
        """Create an account and send it a magic link. 409 if the email is taken."""
        result = auth_service.register(
            email=body.email,
            name=body.name,
            ip_address=_get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        user = result.user
        return success_response(
            {
                "message": "Account created successfully! Please check your email to sign in.",
                "user": {
                    "id": str(user.id),
                    "email": user.email,
                    "name": user.name,
                    "created_at": user.created_at.isoformat(),
                    "is_active": user.is_active,
                    "ai_chats_used": user.ai_chats_used,
                    "ai_chats_limit": user.ai_chats_limit,
                    "total_conversations": user.total_conversations,
                },
            },
            request_id_of(request),
        )

    @router.post("/magic-link")
    def magic_link(request: Request, body: MagicLinkRequest):
        """Send a magic link, creating the account on first contact."""
        auth_service.request_magic_link(
            email=body.email,
            name=body.name,
            ip_address=_get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        return success_response({"message": LINK_SENT_MESSAGE}, request_id_of(request))

    @router.post("/verify")
    def verify(request: Request, response: Response, body: VerifyRequest):
        """Redeem a magic link token and start a session.

        Sets the session cookie on success.
        """
        ip_address = _get_client_ip(request)
        user_agent = request.headers.get("User-Agent")

        identity = auth_service.verify_magic_link(
            token=body.token,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        session = session_issuer.mint(identity)
        response.set_cookie(
            value=session.token,
            **session_issuer.cookie_params(session_issuer.is_secure_transport(request)),
        )

        auth_service.record_session_event(
            SecurityEvent.SESSION_CREATED,
            user_id=identity.id,
            email=identity.email,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        return success_response(
            {
                "message": "Authentication successful",
                "user": {
                    "id": str(identity.id),
                    "email": identity.email,
                    "name": identity.name,
                    "is_active": identity.is_active,
                },
            },
            request_id_of(request),
        )

    @router.post("/logout")
    def logout(request: Request, response: Response):
        """Clear the session cookie. Always succeeds."""
        identity = session_authenticator.authenticate_request(request)
        if identity is not None:
            auth_service.record_session_event(
                SecurityEvent.SESSION_ENDED,
                user_id=identity.user_id,
                email=identity.email,
                ip_address=_get_client_ip(request),
            )

        params = session_issuer.cookie_params(session_issuer.is_secure_transport(request))
        response.delete_cookie(
            key=params["key"],
            path=params["path"],
            secure=params["secure"],
            httponly=params["httponly"],
            samesite=params["samesite"],
        )

        return success_response({"message": "Logged out successfully"}, request_id_of(request))

    @router.get("/me")
    def me(request: Request):
        """Profile of the authenticated caller. 401 without a valid session."""
        identity = _identity(request)
        if identity is None:
            raise NotAuthenticatedError("Authentication required")

        user = auth_service.get_active_user(identity.user_id)
        if user is None:
            raise NotAuthenticatedError("Authentication required")

        return success_response({"user": _user_profile(user)}, request_id_of(request))

    return router
