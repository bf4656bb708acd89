"""Base repository for SQL-backed stores.

Architecture::

    ┌────────────────────────────────────────────────────────────────────┐
    │                       BaseRepository                               │
    │                                                                    │
    │   conn: SqliteConnection                                           │
    │                                                                    │
    │   execute(sql, params)     → cursor                                │
    │   query(sql, params)       → list[dict]                            │
    │   query_one(sql, params)   → dict | None                           │
    │   insert(table, data)      → cursor                                │
    │   transaction()            → context manager                       │
    └────────────────────────────────────────────────────────────────────┘

Tags:
    repository, database, sqlite
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Any

from tablespine.connection import SqliteConnection

# Stay well below SQLite's bound-parameter limit
IN_CHUNK = 500


def placeholders(count: int) -> str:
    """``?, ?, ?`` for *count* parameters."""
    return ", ".join("?" for _ in range(count))


def chunked(ids: Sequence[str], size: int = IN_CHUNK) -> Iterator[Sequence[str]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


class BaseRepository:
    """Base class for data-access repositories."""

    def __init__(self, conn: SqliteConnection) -> None:
        self.conn = conn

    def execute(self, sql: str, params: tuple | list = ()) -> Any:
        """Execute a statement and return the cursor."""
        return self.conn.execute(sql, params)

    def execute_many(self, sql: str, params: list[tuple]) -> Any:
        return self.conn.executemany(sql, params)

    def query(self, sql: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        """Execute a SELECT and return rows as dicts."""
        cursor = self.conn.execute(sql, params)
        return [dict(row) for row in cursor.fetchall()]

    def query_one(self, sql: str, params: tuple | list = ()) -> dict[str, Any] | None:
        """Execute a SELECT and return the first row as a dict (or None)."""
        row = self.conn.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def insert(self, table: str, data: dict[str, Any]) -> Any:
        """Insert a single row from a dict."""
        columns = list(data.keys())
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders(len(columns))})"
        return self.conn.execute(sql, tuple(data.values()))

    def transaction(self):
        return self.conn.transaction()


__all__ = ["BaseRepository", "chunked", "placeholders"]
