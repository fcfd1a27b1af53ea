"""The authenticated caller's user id, visible anywhere in the request's call stack."""

from contextlib import contextmanager
from contextvars import ContextVar
from uuid import UUID

_current_user_id: ContextVar[UUID | None] = ContextVar("current_user_id", default=None)


def get_current_user_id() -> UUID:
    """
    User id of the authenticated caller.

    Raises RuntimeError outside an authenticated request: code that needs
    the caller runs behind AuthMiddleware, so reaching here without one is
    a wiring bug.
    """
    user_id = _current_user_id.get()
    if user_id is None:
        raise RuntimeError(
            "No user context set: called outside an authenticated request"
        )
    return user_id


def set_current_user_id(user_id: UUID) -> None:
    """Called by AuthMiddleware once the session credential verifies."""
    _current_user_id.set(user_id)


def clear_current_user_id() -> None:
    """Called by AuthMiddleware in a finally block when the request ends."""
    _current_user_id.set(None)


@contextmanager
def user_context(user_id: UUID):
    """Run a block as `user_id`, restoring whatever was set before."""
    token = _current_user_id.set(user_id)
    try:
        yield user_id
    finally:
        _current_user_id.reset(token)
