"""User directory - storage for user records and their magic link state.

The interface is deliberately narrow. The one write that needs atomicity,
redeeming a magic link, is a conditional update: the token is cleared only
if it still matches and is unexpired, so of two concurrent redemptions
exactly one observes a row.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from uuid import UUID, uuid4

from psycopg2 import errors as pg_errors

from auth.exceptions import UserAlreadyExistsError
from auth.types import User, DEFAULT_AI_CHATS_LIMIT
from clients.postgres_client import PostgresClient

logger = logging.getLogger(__name__)


class UserDirectory(ABC):
    """Lookup, create and update user records."""

    @abstractmethod
    def get_user_by_email(self, email: str) -> User | None:
        """Find user by normalized email."""

    @abstractmethod
    def get_user_by_id(self, user_id: UUID) -> User | None:
        """Find user by ID."""

    @abstractmethod
    def get_user_by_magic_link_token(self, token: str, now: datetime) -> User | None:
        """Find the user holding `token`, only while it is unexpired at `now`."""

    @abstractmethod
    def create_user(self, email: str, name: str | None, now: datetime) -> User:
        """Create an active user with default counters.

        Raises:
            UserAlreadyExistsError: If the email is taken.
        """

    @abstractmethod
    def set_magic_link_token(
        self, user_id: UUID, token: str, expires_at: datetime, now: datetime
    ) -> bool:
        """Store a token/expiry pair, overwriting any previous one.

        Returns:
            True if the user exists and was updated.
        """

    @abstractmethod
    def redeem_magic_link_token(self, user_id: UUID, token: str, now: datetime) -> User | None:
        """Atomically clear the token pair and stamp last login.

        Succeeds only if the stored token still equals `token` and is
        unexpired at `now`.

        Returns:
            The updated user, or None if the conditional update matched nothing.
        """

    def activate_user(self, user_id: UUID, now: datetime) -> bool:
        """Allow login again. Returns False if no such user."""
        return self._set_active(user_id, True, now)

    def deactivate_user(self, user_id: UUID, now: datetime) -> bool:
        """Block login. Existing sessions stop resolving at /auth/me.

        Returns False if no such user.
        """
        return self._set_active(user_id, False, now)

    @abstractmethod
    def _set_active(self, user_id: UUID, is_active: bool, now: datetime) -> bool:
        """Store the active flag. Returns False if no such user."""


_USER_COLUMNS = """id, email, name, is_active, magic_link_token, magic_link_expiration,
                   created_at, updated_at, last_login_at,
                   ai_chats_used, ai_chats_limit, total_conversations"""


def _row_to_user(row: dict) -> User:
    row = dict(row)
    if isinstance(row["id"], str):
        row["id"] = UUID(row["id"])
    return User(**row)


class PostgresUserDirectory(UserDirectory):
    """User directory backed by the `users` table."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    def get_user_by_email(self, email: str) -> User | None:
        row = self._db.execute_single(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = lower(%s)",
            (email,),
        )
        return _row_to_user(row) if row else None

    def get_user_by_id(self, user_id: UUID) -> User | None:
        row = self._db.execute_single(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s",
            (str(user_id),),
        )
        return _row_to_user(row) if row else None

    def get_user_by_magic_link_token(self, token: str, now: datetime) -> User | None:
        row = self._db.execute_single(
            f"""SELECT {_USER_COLUMNS} FROM users
                WHERE magic_link_token = %s AND magic_link_expiration > %s""",
            (token, now),
        )
        return _row_to_user(row) if row else None

    def create_user(self, email: str, name: str | None, now: datetime) -> User:
        try:
            rows = self._db.execute_returning(
                f"""INSERT INTO users
                       (email, name, is_active, created_at, updated_at,
                        ai_chats_used, ai_chats_limit, total_conversations)
                    VALUES (lower(%s), %s, true, %s, %s, 0, %s, 0)
                    RETURNING {_USER_COLUMNS}""",
                (email, name, now, now, DEFAULT_AI_CHATS_LIMIT),
            )
        except pg_errors.UniqueViolation:
            raise UserAlreadyExistsError(f"User already exists: {email}")
        return _row_to_user(rows[0])

    def set_magic_link_token(
        self, user_id: UUID, token: str, expires_at: datetime, now: datetime
    ) -> bool:
        rows = self._db.execute_returning(
            """UPDATE users
               SET magic_link_token = %s, magic_link_expiration = %s, updated_at = %s
               WHERE id = %s
               RETURNING id""",
            (token, expires_at, now, str(user_id)),
        )
        return len(rows) > 0

    def redeem_magic_link_token(self, user_id: UUID, token: str, now: datetime) -> User | None:
        rows = self._db.execute_returning(
            f"""UPDATE users
                SET magic_link_token = NULL, magic_link_expiration = NULL,
                    last_login_at = %s, updated_at = %s
                WHERE id = %s AND magic_link_token = %s AND magic_link_expiration > %s
                RETURNING {_USER_COLUMNS}""",
            (now, now, str(user_id), token, now),
        )
        return _row_to_user(rows[0]) if rows else None

    def _set_active(self, user_id: UUID, is_active: bool, now: datetime) -> bool:
        rows = self._db.execute_returning(
            "UPDATE users SET is_active = %s, updated_at = %s WHERE id = %s RETURNING id",
            (is_active, now, str(user_id)),
        )
        return len(rows) > 0


class InMemoryUserDirectory(UserDirectory):
    """Process-local user directory.

    Suitable for single-process deployments and tests. All mutation happens
    under one lock, which gives redemption the same compare-and-clear
    semantics as the conditional UPDATE.
    """

    def __init__(self):
        self._users: dict[UUID, User] = {}
        self._lock = threading.Lock()

    def _find_by_email(self, email: str) -> User | None:
        email = email.lower()
        for user in self._users.values():
            if user.email == email:
                return user
        return None

    def get_user_by_email(self, email: str) -> User | None:
        with self._lock:
            user = self._find_by_email(email)
            return user.model_copy() if user else None

    def get_user_by_id(self, user_id: UUID) -> User | None:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy() if user else None

    def get_user_by_magic_link_token(self, token: str, now: datetime) -> User | None:
        with self._lock:
            for user in self._users.values():
                if user.has_valid_magic_link(token, now):
                    return user.model_copy()
            return None

    def create_user(self, email: str, name: str | None, now: datetime) -> User:
        with self._lock:
            if self._find_by_email(email) is not None:
                raise UserAlreadyExistsError(f"User already exists: {email}")
            user = User(
                id=uuid4(),
                email=email.lower(),
                name=name,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            self._users[user.id] = user
            return user.model_copy()

    def set_magic_link_token(
        self, user_id: UUID, token: str, expires_at: datetime, now: datetime
    ) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return False
            self._users[user_id] = user.model_copy(
                update={
                    "magic_link_token": token,
                    "magic_link_expiration": expires_at,
                    "updated_at": now,
                }
            )
            return True

    def redeem_magic_link_token(self, user_id: UUID, token: str, now: datetime) -> User | None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None or not user.has_valid_magic_link(token, now):
                return None
            redeemed = user.model_copy(
                update={
                    "magic_link_token": None,
                    "magic_link_expiration": None,
                    "last_login_at": now,
                    "updated_at": now,
                }
            )
            self._users[user_id] = redeemed
            return redeemed.model_copy()

    def _set_active(self, user_id: UUID, is_active: bool, now: datetime) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return False
            self._users[user_id] = user.model_copy(
                update={"is_active": is_active, "updated_at": now}
            )
            return True
