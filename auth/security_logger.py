"""Audit trail for magic link and session activity.

Rows go to the security_events table and are never updated. Callers pass
the reason for a failure in `details`; token values and callback URLs
must never be passed.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from psycopg2.extras import Json
from pydantic import BaseModel

from clients.postgres_client import PostgresClient
from utils.timezone import now_utc


class SecurityEvent(Enum):
    """What happened. Stored as the event_type column."""

    MAGIC_LINK_REQUESTED = "magic_link_requested"
    MAGIC_LINK_SENT = "magic_link_sent"
    MAGIC_LINK_VERIFIED = "magic_link_verified"
    MAGIC_LINK_FAILED = "magic_link_failed"
    USER_CREATED = "user_created"
    SESSION_CREATED = "session_created"
    SESSION_ENDED = "session_ended"


class SecurityEventRecord(BaseModel):
    """One stored audit row."""

    id: int
    event_type: SecurityEvent
    email: str | None = None
    user_id: UUID | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime


_EVENT_COLUMNS = "id, event_type, email, user_id, ip_address, user_agent, details, created_at"


class SecurityLogger:
    """Writes and reads the security_events table."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    def log(
        self,
        event: SecurityEvent,
        email: str | None = None,
        user_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append one event. Database errors propagate to the caller."""
        self._db.execute_returning(
            """INSERT INTO security_events
               (event_type, email, user_id, ip_address, user_agent, details, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (
                event.value,
                email,
                user_id,
                ip_address,
                user_agent,
                Json(details) if details else None,
                now_utc(),
            ),
        )

    def get_recent_events(
        self,
        email: str | None = None,
        user_id: UUID | None = None,
        event_type: SecurityEvent | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[SecurityEventRecord]:
        """Events matching every given filter, newest first."""
        filters = {
            "email = %s": email,
            "user_id = %s": user_id,
            "event_type = %s": event_type.value if event_type else None,
            "created_at >= %s": since,
        }
        clauses = [clause for clause, value in filters.items() if value is not None]
        params = [value for value in filters.values() if value is not None]

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._db.execute(
            f"""SELECT {_EVENT_COLUMNS} FROM security_events
                {where}
                ORDER BY created_at DESC
                LIMIT %s""",
            (*params, limit),
        )
        return [_to_record(row) for row in rows]


def _to_record(row: dict) -> SecurityEventRecord:
    # inet may arrive as an ipaddress object
    ip_address = row.get("ip_address")
    return SecurityEventRecord(**{**row, "ip_address": str(ip_address) if ip_address else None})
