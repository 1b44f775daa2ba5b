"""
Toolgate Database Connection Abstraction

Provides a unified interface for SQLite and PostgreSQL.
Detects the backend from the connection URL:
- ``postgresql://`` or ``postgres://`` → psycopg (PostgreSQL)
- anything else (file path, ``:memory:``) → sqlite3

Usage::

    from toolgate.storage.db import connect

    conn = connect(os.environ.get("DATABASE_URL", "toolgate.db"))
    with conn.transaction():
        conn.execute("DELETE FROM tool_invocation_policies WHERE agent_tool_id = ?", ("at-1",))
        conn.execute("INSERT INTO tool_invocation_policies (...) VALUES (...)", (...))

The ``?`` placeholder is automatically converted to ``%s`` for PostgreSQL.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any


class DbConnection:
    """Unified database connection wrapper."""

    def __init__(self, conn: Any, *, is_postgres: bool = False) -> None:
        self._conn = conn
        self._cursor: Any = None
        self._in_transaction = False
        self.is_postgres = is_postgres

    def _convert_sql(self, sql: str) -> str:
        """Convert SQLite-style ``?`` placeholders to ``%s`` for PostgreSQL."""
        if not self.is_postgres:
            return sql
        return sql.replace("?", "%s")

    def execute(self, sql: str, params: tuple = ()) -> DbConnection:
        """Execute a single SQL statement. Returns self for chaining."""
        sql = self._convert_sql(sql)
        if self.is_postgres:
            self._cursor = self._conn.cursor()
            self._cursor.execute(sql, params or None)
        else:
            self._cursor = self._conn.execute(sql, params)
        return self

    def executescript(self, sql: str) -> None:
        """Execute multiple SQL statements separated by semicolons."""
        if self.is_postgres:
            cur = self._conn.cursor()
            for stmt in sql.split(";"):
                stmt = stmt.strip()
                if stmt:
                    cur.execute(stmt)
            self._conn.commit()
        else:
            self._conn.executescript(sql)

    def fetchone(self) -> dict[str, Any] | None:
        """Fetch one row as a dict."""
        if self._cursor is None:
            return None
        row = self._cursor.fetchone()
        if row is None:
            return None
        return dict(row)

    def fetchall(self) -> list[dict[str, Any]]:
        """Fetch all rows as list of dicts."""
        if self._cursor is None:
            return []
        return [dict(r) for r in self._cursor.fetchall()]

    @property
    def rowcount(self) -> int:
        if self._cursor is None:
            return 0
        return self._cursor.rowcount

    def commit(self) -> None:
        """Commit the current transaction (deferred while inside ``transaction()``)."""
        if not self._in_transaction:
            self._conn.commit()

    def rollback(self) -> None:
        """Roll back the current transaction."""
        self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[DbConnection]:
        """Run a block of statements atomically.

        Commits on success, rolls back on any exception and re-raises.
        Nested calls join the outer transaction.
        """
        if self._in_transaction:
            yield self
            return

        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._in_transaction = False
            self._conn.rollback()
            raise
        self._in_transaction = False
        self._conn.commit()

    def close(self) -> None:
        """Close the connection."""
        self._conn.close()


def connect(db_url: str) -> DbConnection:
    """Create a database connection from a URL or path.

    Args:
        db_url: PostgreSQL URL (``postgresql://...`` or ``postgres://...``)
                or SQLite path (file path or ``:memory:``).

    Returns:
        A unified DbConnection wrapper.
    """
    if db_url.startswith(("postgresql://", "postgres://")):
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError:
            raise ImportError(
                "PostgreSQL support requires psycopg. Install with: pip install 'toolgate[postgres]'"
            ) from None

        conn = psycopg.connect(db_url, row_factory=dict_row, autocommit=False)
        return DbConnection(conn, is_postgres=True)

    conn = sqlite3.connect(db_url, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return DbConnection(conn, is_postgres=False)
