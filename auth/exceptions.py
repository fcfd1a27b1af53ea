"""Typed exceptions for auth failures.

HTTP status and error code for each are assigned in api/errors.py.
"""


class AuthError(Exception):
    """Base class for authentication/authorization errors."""


class InvalidRequestError(AuthError):
    """Input is missing or malformed (e.g. bad email address)."""


class InvalidTokenError(AuthError):
    """
    Magic link token is invalid, expired, or already used.

    Callers always see the same message: the three cases are deliberately
    indistinguishable.
    """

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message)


class UserNotFoundError(AuthError):
    """Email not associated with any user."""


class UserAlreadyExistsError(AuthError):
    """Registration attempted for an email that already has an account."""


class UserInactiveError(AuthError):
    """User account is deactivated. Login not permitted."""


class NotAuthenticatedError(AuthError):
    """No valid session credential accompanied the request."""
