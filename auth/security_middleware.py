"""Security middleware for FastAPI - session validation and user context."""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from auth.session import SessionAuthenticator
from api.base import error_json, request_id_of, ErrorCodes
from utils.user_context import set_current_user_id, clear_current_user_id


class AuthMiddleware(BaseHTTPMiddleware):
    """Middleware that verifies the session credential and sets user context.

    For protected routes:
    1. Extracts the credential from the 'auth-token' cookie (or Bearer header)
    2. Verifies signature and expiry via SessionAuthenticator
    3. Sets identity and user_id in request.state and the user contextvar
    4. Clears context after request completes

    Public paths bypass authentication entirely.
    """

    PUBLIC_PATHS = [
        "/auth/login",
        "/auth/register",
        "/auth/magic-link",
        "/auth/verify",
        "/auth/logout",
        "/health",
        "/docs",
        "/openapi.json",
    ]

    def __init__(self, app, session_authenticator: SessionAuthenticator):
        super().__init__(app)
        self._session_authenticator = session_authenticator

    def _is_public_path(self, path: str) -> bool:
        """Exact match or a sub-path of a public path."""
        for public_path in self.PUBLIC_PATHS:
            if path == public_path or path.startswith(public_path.rstrip("/") + "/"):
                return True
        return False

    async def dispatch(self, request: Request, call_next):
        """Process request through middleware."""
        if self._is_public_path(request.url.path):
            return await call_next(request)

        identity = self._session_authenticator.authenticate_request(request)
        if identity is None:
            return error_json(
                401,
                ErrorCodes.NOT_AUTHENTICATED,
                "Authentication required",
                request_id_of(request),
            )

        set_current_user_id(identity.user_id)
        request.state.identity = identity
        request.state.user_id = identity.user_id

        try:
            return await call_next(request)
        finally:
            # Always clear context
            clear_current_user_id()
