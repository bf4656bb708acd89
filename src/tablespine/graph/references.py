"""Reference Graph Store — persisted ``from_field → to_field`` edges.

An edge means "``to_field``'s value depends on ``from_field``". Edges are
directional and may form cycles; the store holds at most one edge per ordered
pair, so inserts are idempotent.

Example::

    refs = ReferenceRepository(conn)
    refs.add_edge("fldCount...", "fldLookup...")
    refs.dependents_of(["fldCount..."])
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from tablespine.ids import generate_id
from tablespine.repository import BaseRepository, chunked, placeholders
from tablespine.timestamps import from_db, to_db, utc_now


@dataclass(frozen=True)
class ReferenceEdge:
    id: str
    from_field_id: str
    to_field_id: str
    created_at: datetime


class ReferenceRepository(BaseRepository):
    """Storage and queries over the ``reference`` table."""

    def add_edge(self, from_field_id: str, to_field_id: str) -> bool:
        """Insert an edge. Returns False when the pair already existed."""
        cursor = self.execute(
            """
            INSERT INTO reference (id, from_field_id, to_field_id, created_time)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (from_field_id, to_field_id) DO NOTHING
            """,
            (generate_id("ref"), from_field_id, to_field_id, to_db(utc_now())),
        )
        return cursor.rowcount > 0

    def add_edges(self, pairs: Iterable[tuple[str, str]]) -> int:
        """Insert many edges; returns the number actually added."""
        return sum(1 for a, b in pairs if self.add_edge(a, b))

    def replace_dependencies(self, to_field_id: str, from_field_ids: Iterable[str]) -> None:
        """Make ``from_field_ids`` the exact upstream set of ``to_field_id``."""
        wanted = list(dict.fromkeys(from_field_ids))
        with self.transaction():
            if wanted:
                self.execute(
                    f"DELETE FROM reference WHERE to_field_id = ? "
                    f"AND from_field_id NOT IN ({placeholders(len(wanted))})",
                    (to_field_id, *wanted),
                )
            else:
                self.execute("DELETE FROM reference WHERE to_field_id = ?", (to_field_id,))
            for from_field_id in wanted:
                self.add_edge(from_field_id, to_field_id)

    def remove_field(self, field_id: str) -> int:
        """Drop every edge touching ``field_id``."""
        cursor = self.execute(
            "DELETE FROM reference WHERE from_field_id = ? OR to_field_id = ?",
            (field_id, field_id),
        )
        return cursor.rowcount

    def dependents_of(self, field_ids: Iterable[str]) -> list[ReferenceEdge]:
        """Edges leaving any of ``field_ids``."""
        return self._edges_where("from_field_id", field_ids)

    def dependencies_of(self, field_ids: Iterable[str]) -> list[ReferenceEdge]:
        """Edges entering any of ``field_ids``."""
        return self._edges_where("to_field_id", field_ids)

    def edges_for_fields(self, field_ids: Iterable[str]) -> list[ReferenceEdge]:
        """Edges with either end in ``field_ids``."""
        ids = list(dict.fromkeys(field_ids))
        seen: dict[str, ReferenceEdge] = {}
        for edge in self._edges_where("from_field_id", ids) + self._edges_where("to_field_id", ids):
            seen.setdefault(edge.id, edge)
        return list(seen.values())

    def all_edges(self) -> list[ReferenceEdge]:
        rows = self.query(
            "SELECT id, from_field_id, to_field_id, created_time FROM reference "
            "ORDER BY created_time, rowid"
        )
        return [self._row_to_edge(r) for r in rows]

    def _edges_where(self, column: str, field_ids: Iterable[str]) -> list[ReferenceEdge]:
        ids = list(dict.fromkeys(field_ids))
        edges: list[ReferenceEdge] = []
        for chunk in chunked(ids):
            rows = self.query(
                f"SELECT id, from_field_id, to_field_id, created_time FROM reference "
                f"WHERE {column} IN ({placeholders(len(chunk))}) ORDER BY created_time, rowid",
                tuple(chunk),
            )
            edges.extend(self._row_to_edge(r) for r in rows)
        return edges

    @staticmethod
    def _row_to_edge(row: dict) -> ReferenceEdge:
        return ReferenceEdge(
            id=row["id"],
            from_field_id=row["from_field_id"],
            to_field_id=row["to_field_id"],
            created_at=from_db(row["created_time"]),
        )
