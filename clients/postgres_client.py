"""
PostgreSQL access over a shared psycopg2 connection pool.

Every call runs in its own transaction on a borrowed connection: commit on
success, rollback on error. Atomic read-modify-write is expressed as one
conditional statement (UPDATE ... WHERE ... RETURNING), not as a
multi-statement transaction.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Tuple
from uuid import UUID

import psycopg2
import psycopg2.extras
import psycopg2.pool

logger = logging.getLogger(__name__)

Params = Tuple | Dict | None


def _adapt(value: Any) -> Any:
    """UUIDs as text, recursing into containers."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (list, tuple)):
        return type(value)(_adapt(v) for v in value)
    if isinstance(value, dict):
        return {k: _adapt(v) for k, v in value.items()}
    return value


class PostgresClient:
    """
    Thin query runner returning rows as dicts.

    Usage:
        db = PostgresClient(database_url)
        user = db.execute_single("SELECT * FROM users WHERE email = %s", (email,))
        rows = db.execute_returning("UPDATE users SET ... WHERE ... RETURNING id", params)
    """

    # One pool per DSN, shared by every client in the process
    _connection_pools: Dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
    _pools_lock = threading.RLock()

    def __init__(self, database_url: str, min_connections: int = 2, max_connections: int = 20):
        self._database_url = database_url
        self._min_connections = min_connections
        self._max_connections = max_connections
        self._pool()

    def _pool(self) -> psycopg2.pool.ThreadedConnectionPool:
        with self._pools_lock:
            pool = self._connection_pools.get(self._database_url)
            if pool is None:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self._min_connections,
                    maxconn=self._max_connections,
                    dsn=self._database_url,
                    connect_timeout=30,
                )
                self._connection_pools[self._database_url] = pool
                logger.info(
                    f"Connection pool created ({self._min_connections}-{self._max_connections} connections)"
                )
            return pool

    @contextmanager
    def get_connection(self):
        """Borrow a pooled connection; it goes back rolled back if the block raised."""
        pool = self._pool()
        conn = pool.getconn()
        if conn is None:
            raise RuntimeError("Could not get connection from pool")
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            pool.putconn(conn)

    def _run(self, query: str, params: Params, require_rows: bool) -> List[Dict[str, Any]]:
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, _adapt(params))
                if require_rows or cur.description:
                    rows = [dict(row) for row in cur.fetchall()]
                else:
                    rows = []
            conn.commit()
        return rows

    def execute(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Run a statement; rows if it produced a result set, else []."""
        return self._run(query, params, require_rows=False)

    def execute_single(self, query: str, params: Params = None) -> Dict[str, Any] | None:
        """First row or None."""
        rows = self.execute(query, params)
        return rows[0] if rows else None

    def execute_returning(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Run an INSERT/UPDATE ... RETURNING and return the affected rows."""
        return self._run(query, params, require_rows=True)

    def close(self) -> None:
        """Close this DSN's pool."""
        with self._pools_lock:
            pool = self._connection_pools.pop(self._database_url, None)
            if pool is not None:
                pool.closeall()

    @classmethod
    def close_all_pools(cls) -> None:
        with cls._pools_lock:
            for pool in cls._connection_pools.values():
                pool.closeall()
            cls._connection_pools.clear()
