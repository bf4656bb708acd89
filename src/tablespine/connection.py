"""SQLite connection adapter and factory.

Wraps a raw :class:`sqlite3.Connection` so that repositories can call
``execute()`` / ``fetchone()`` / ``fetchall()`` at the connection level and
group statements with :meth:`SqliteConnection.transaction`.

The underlying connection runs in autocommit mode (``isolation_level=None``);
transactions are explicit. The outermost ``transaction()`` issues
``BEGIN IMMEDIATE`` so that a writer takes the database write lock before it
reads, and nested blocks become savepoints.

Usage::

    from tablespine.connection import create_connection

    conn, info = create_connection("sqlite:///tablespine.db")
    with conn.transaction():
        conn.execute("INSERT INTO t VALUES (?)", (1,))
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class SqliteConnection:
    """Adapter: ``sqlite3.Connection`` with explicit, nestable transactions.

    One adapter must not be shared by threads that write concurrently;
    worker threads open their own connection.
    """

    def __init__(
        self,
        path: str = ":memory:",
        *,
        row_factory: Any = sqlite3.Row,
        timeout: float = 30.0,
    ) -> None:
        self.path = path
        self._conn = sqlite3.connect(
            path,
            check_same_thread=False,
            isolation_level=None,
            timeout=timeout,
        )
        self._conn.row_factory = row_factory
        self._cursor = self._conn.cursor()
        self._depth = 0
        self._lock = threading.RLock()
        self._conn.execute("PRAGMA foreign_keys = ON")
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")

    # -- Connection protocol -----------------------------------------------

    def execute(self, sql: str, params: tuple | list | dict = ()) -> sqlite3.Cursor:
        self._cursor = self._conn.execute(sql, params)
        return self._cursor

    def executemany(self, sql: str, params: list[tuple]) -> sqlite3.Cursor:
        self._cursor = self._conn.executemany(sql, params)
        return self._cursor

    def fetchone(self) -> Any:
        return self._cursor.fetchone()

    def fetchall(self) -> list:
        return self._cursor.fetchall()

    def commit(self) -> None:
        if self._depth == 0 and self._conn.in_transaction:
            self._conn.commit()

    def rollback(self) -> None:
        if self._depth == 0 and self._conn.in_transaction:
            self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    # -- transactions ------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator[SqliteConnection]:
        """Run the block atomically.

        The outermost block commits or rolls back; nested blocks use
        savepoints so an inner failure that the caller handles does not
        discard the outer work.
        """
        with self._lock:
            depth = self._depth
            if depth == 0:
                self._conn.execute("BEGIN IMMEDIATE")
            else:
                self._conn.execute(f"SAVEPOINT sp_{depth}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    self._conn.execute("ROLLBACK")
                else:
                    self._conn.execute(f"ROLLBACK TO sp_{depth}")
                    self._conn.execute(f"RELEASE sp_{depth}")
                raise
            else:
                self._depth -= 1
                if depth == 0:
                    self._conn.execute("COMMIT")
                else:
                    self._conn.execute(f"RELEASE sp_{depth}")

    # -- convenience -------------------------------------------------------

    @property
    def raw(self) -> sqlite3.Connection:
        """Access the underlying ``sqlite3.Connection`` (e.g. for pragmas)."""
        return self._conn

    def __repr__(self) -> str:
        return f"SqliteConnection({self.path!r})"


# ── Factory ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ConnectionInfo:
    """Metadata about a database connection."""

    backend: str
    persistent: bool
    url: str
    resolved_path: str | None = None


def _strip_scheme(url: str) -> str:
    if url.startswith("sqlite:///"):
        return url[len("sqlite:///"):]
    if url.startswith("sqlite://"):
        return url[len("sqlite://"):]
    return url


def create_connection(
    url: str | None = None,
    *,
    init_schema: bool = False,
) -> tuple[SqliteConnection, ConnectionInfo]:
    """Create a connection from a URL or path.

    ``None``, ``"memory"``, ``":memory:"`` and ``"sqlite://"`` give an
    in-memory database; ``sqlite:///path`` or a bare path give a file.
    """
    raw = (url or "").strip()
    path = _strip_scheme(raw)
    if path in ("", "memory", ":memory:"):
        conn = SqliteConnection(":memory:")
        info = ConnectionInfo(backend="sqlite", persistent=False, url=raw or ":memory:")
    else:
        file_path = Path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        resolved = str(file_path.resolve())
        conn = SqliteConnection(resolved)
        info = ConnectionInfo(backend="sqlite", persistent=True, url=raw, resolved_path=resolved)

    if init_schema:
        from tablespine.schema import create_tables

        create_tables(conn)
    return conn, info
