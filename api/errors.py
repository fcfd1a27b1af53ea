"""Global exception handlers for FastAPI."""

import logging

import psycopg2
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from api.base import error_json, request_id_of, ErrorCodes
from auth.exceptions import (
    AuthError,
    InvalidRequestError,
    InvalidTokenError,
    NotAuthenticatedError,
    UserAlreadyExistsError,
    UserInactiveError,
    UserNotFoundError,
)
from clients.email_client import EmailGatewayError

logger = logging.getLogger(__name__)

# Exception class -> (HTTP status, error code). Looked up along the MRO.
AUTH_ERROR_STATUS: dict[type[AuthError], tuple[int, str]] = {
    InvalidRequestError: (400, ErrorCodes.INVALID_REQUEST),
    InvalidTokenError: (400, ErrorCodes.INVALID_TOKEN),
    NotAuthenticatedError: (401, ErrorCodes.NOT_AUTHENTICATED),
    UserInactiveError: (403, ErrorCodes.ACCOUNT_INACTIVE),
    UserNotFoundError: (404, ErrorCodes.NOT_FOUND),
    UserAlreadyExistsError: (409, ErrorCodes.ALREADY_EXISTS),
}


def status_for(exc: AuthError) -> tuple[int, str]:
    for cls in type(exc).__mro__:
        if cls in AUTH_ERROR_STATUS:
            return AUTH_ERROR_STATUS[cls]
    return 500, ErrorCodes.INTERNAL_ERROR


def _first_error_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid value")
    return f"{field}: {message}" if field else message


def _internal_error(request: Request):
    return error_json(
        500,
        ErrorCodes.INTERNAL_ERROR,
        "An internal error occurred",
        request_id_of(request),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        status_code, code = status_for(exc)
        if status_code >= 500:
            logger.exception("Unmapped auth error")
            return _internal_error(request)
        return error_json(status_code, code, str(exc), request_id_of(request))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_json(
            400,
            ErrorCodes.VALIDATION_ERROR,
            _first_error_message(exc),
            request_id_of(request),
        )

    @app.exception_handler(EmailGatewayError)
    @app.exception_handler(psycopg2.Error)
    async def dependency_error_handler(request: Request, exc: Exception):
        # Handled inside the middleware stack so the response still gets X-Request-ID
        logger.exception(f"{type(exc).__name__} while handling {request.url.path}")
        return _internal_error(request)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        # Last resort; runs outside the middleware stack. Details stay in the log.
        logger.exception("Unhandled exception")
        return _internal_error(request)
