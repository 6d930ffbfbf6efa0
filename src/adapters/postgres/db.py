from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from src.domain.errors import TransientIOError


class PostgresPool:
    """Thread-safe connection pool for the subscription database.

    Each ``transaction()`` block commits on success and rolls back on error, so a
    batch of status writes lands together or not at all.
    """

    def __init__(self, dsn: str, minconn: int = 1, maxconn: int = 5):
        self._pool = ThreadedConnectionPool(minconn, maxconn, dsn=dsn, cursor_factory=RealDictCursor)

    @contextmanager
    def connection(self) -> Iterator[psycopg2.extensions.connection]:
        try:
            conn = self._pool.getconn()
        except psycopg2.OperationalError as exc:
            raise TransientIOError(f"ChangeLog store unreachable: {exc}") from exc
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator[psycopg2.extensions.connection]:
        with self.connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def close(self) -> None:
        self._pool.closeall()


def fetch_one(conn, query: str, params: Optional[tuple] = None):
    with conn.cursor() as cur:
        cur.execute(query, params or ())
        return cur.fetchone()


def fetch_all(conn, query: str, params: Optional[tuple] = None):
    with conn.cursor() as cur:
        cur.execute(query, params or ())
        return cur.fetchall()


def execute(conn, query: str, params: Optional[tuple] = None) -> int:
    """Run a write statement and return the affected row count; the caller commits."""
    with conn.cursor() as cur:
        cur.execute(query, params or ())
        return cur.rowcount
