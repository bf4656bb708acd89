"""Physical record storage.

Each user table is one SQLite table ``rec_<tableId>``::

    __auto_number   INTEGER PRIMARY KEY AUTOINCREMENT   monotonic insert counter
    __id            TEXT UNIQUE                         record id
    __data          TEXT (JSON)                         field id → cell value
    __version       INTEGER
    __row_<viewId>  REAL                                per-view order keys (lazy)

Link cells are mirrored into ``ts_link`` (one row per linked pair) so that
"which records link to these" is an indexed query, and into the symmetric
field of the foreign table when the link is two-way.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from tablespine.catalog import FieldCatalog
from tablespine.errors import RecordNotFoundError, ValidationError
from tablespine.fields.models import FieldDescriptor, LinkKind
from tablespine.ids import RECORD_PREFIX, generate_id, is_safe_identifier
from tablespine.repository import BaseRepository, chunked, placeholders
from tablespine.timestamps import to_db, utc_now

ORDER_COLUMN_PREFIX = "__row_"


@dataclass
class LinkChange:
    """Records of ``table_id`` whose link field ``field_id`` changed as a side effect."""

    table_id: str
    field_id: str
    record_ids: set[str] = field(default_factory=set)


def normalize_link_value(value: Any) -> list[str]:
    """Accept an id, a list of ids, or ``{"id": ...}`` objects."""
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    ids: list[str] = []
    for item in value:
        record_id = item.get("id") if isinstance(item, dict) else item
        if not isinstance(record_id, str) or not record_id:
            raise ValidationError(f"Invalid link value: {item!r}")
        if record_id not in ids:
            ids.append(record_id)
    return ids


class RecordStore(BaseRepository):
    """CRUD over per-table record storage and the link junction."""

    def __init__(self, conn, catalog: FieldCatalog):
        super().__init__(conn)
        self._catalog = catalog
        self._names: dict[str, str] = {}

    # ------------------------------------------------------------------ #
    # Tables
    # ------------------------------------------------------------------ #

    def db_table(self, table_id: str) -> str:
        name = self._names.get(table_id)
        if name is None:
            name = self._catalog.get_table(table_id).db_table_name
            if not is_safe_identifier(name):
                raise ValidationError(f"Invalid table name: {name!r}")
            self._names[table_id] = name
        return name

    def create_table(self, table_id: str) -> None:
        name = self.db_table(table_id)
        self.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {name} (
                __auto_number INTEGER PRIMARY KEY AUTOINCREMENT,
                __id TEXT NOT NULL UNIQUE,
                __data TEXT NOT NULL DEFAULT '{{}}',
                __version INTEGER NOT NULL DEFAULT 1,
                __created_time TEXT NOT NULL,
                __last_modified_time TEXT
            )
            """
        )

    def columns(self, table_id: str) -> list[str]:
        name = self.db_table(table_id)
        return [row["name"] for row in self.query(f"PRAGMA table_info({name})")]

    def order_columns(self, table_id: str) -> list[str]:
        return [c for c in self.columns(table_id) if c.startswith(ORDER_COLUMN_PREFIX)]

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def exists(self, table_id: str, record_id: str) -> bool:
        name = self.db_table(table_id)
        return self.query_one(f"SELECT 1 AS found FROM {name} WHERE __id = ?", (record_id,)) is not None

    def get(self, table_id: str, record_id: str) -> dict[str, Any] | None:
        """Cell values of one record, or None."""
        name = self.db_table(table_id)
        row = self.query_one(f"SELECT __data FROM {name} WHERE __id = ?", (record_id,))
        return json.loads(row["__data"]) if row is not None else None

    def get_many(self, table_id: str, record_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
        """Cell values by record id; missing records are skipped."""
        name = self.db_table(table_id)
        ids = list(dict.fromkeys(record_ids))
        result: dict[str, dict[str, Any]] = {}
        for chunk in chunked(ids):
            rows = self.query(
                f"SELECT __id, __data FROM {name} WHERE __id IN ({placeholders(len(chunk))})",
                tuple(chunk),
            )
            for row in rows:
                result[row["__id"]] = json.loads(row["__data"])
        return {rid: result[rid] for rid in ids if rid in result}

    def all_records(self, table_id: str) -> dict[str, dict[str, Any]]:
        """Every record of the table, in insertion order."""
        name = self.db_table(table_id)
        rows = self.query(f"SELECT __id, __data FROM {name} ORDER BY __auto_number")
        return {row["__id"]: json.loads(row["__data"]) for row in rows}

    def all_ids(self, table_id: str) -> list[str]:
        name = self.db_table(table_id)
        return [r["__id"] for r in self.query(f"SELECT __id FROM {name} ORDER BY __auto_number")]

    def count(self, table_id: str) -> int:
        name = self.db_table(table_id)
        return self.query_one(f"SELECT COUNT(*) AS n FROM {name}")["n"]

    def linked_ids(self, link_field_id: str, record_id: str) -> list[str]:
        rows = self.query(
            "SELECT foreign_record_id FROM ts_link WHERE field_id = ? AND record_id = ? "
            "ORDER BY position",
            (link_field_id, record_id),
        )
        return [r["foreign_record_id"] for r in rows]

    def records_linking_to(self, link_field_id: str, foreign_record_ids: Iterable[str]) -> list[str]:
        """Records whose ``link_field_id`` cell contains any of ``foreign_record_ids``."""
        ids = list(dict.fromkeys(foreign_record_ids))
        found: dict[str, None] = {}
        for chunk in chunked(ids):
            rows = self.query(
                f"SELECT DISTINCT record_id FROM ts_link WHERE field_id = ? "
                f"AND foreign_record_id IN ({placeholders(len(chunk))})",
                (link_field_id, *chunk),
            )
            for row in rows:
                found.setdefault(row["record_id"], None)
        return list(found)

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def insert(
        self,
        table_id: str,
        rows: Sequence[Mapping[str, Any]],
        record_ids: Sequence[str] | None = None,
    ) -> tuple[list[str], list[LinkChange]]:
        """Insert records; each new record is appended to every view order.

        Returns the new record ids and the link side effects on other tables.
        """
        name = self.db_table(table_id)
        order_columns = self.order_columns(table_id)
        now = to_db(utc_now())
        new_ids: list[str] = []
        for index, _row in enumerate(rows):
            record_id = record_ids[index] if record_ids else generate_id(RECORD_PREFIX)
            self.execute(
                f"INSERT INTO {name} (__id, __data, __created_time) VALUES (?, '{{}}', ?)",
                (record_id, now),
            )
            for column in order_columns:
                self.execute(
                    f"UPDATE {name} SET {column} = "
                    f"(SELECT COALESCE(MAX({column}), 0) + 1 FROM {name}) WHERE __id = ?",
                    (record_id,),
                )
            new_ids.append(record_id)

        changes: dict[tuple[str, str], LinkChange] = {}
        for record_id, row in zip(new_ids, rows):
            for change in self.write(table_id, record_id, row):
                key = (change.table_id, change.field_id)
                changes.setdefault(key, LinkChange(change.table_id, change.field_id)).record_ids |= change.record_ids
        return new_ids, list(changes.values())

    def write(self, table_id: str, record_id: str, values: Mapping[str, Any]) -> list[LinkChange]:
        """Write user values. Link cells go through the junction and symmetric field."""
        if not self.exists(table_id, record_id):
            raise RecordNotFoundError(table_id, record_id)
        descriptors = self._catalog.get_fields(values.keys())
        changes: list[LinkChange] = []
        plain: dict[str, Any] = {}
        for field_id, value in values.items():
            descriptor = descriptors.get(field_id)
            if descriptor is None or not descriptor.is_link:
                plain[field_id] = value
                continue
            ids, change = self._write_link(record_id, descriptor, value)
            # re-read: a self-link may have touched this record's symmetric cell
            data = self.get(table_id, record_id)
            data[field_id] = ids
            self._save(table_id, record_id, data)
            if change is not None:
                changes.append(change)
        if plain:
            data = self.get(table_id, record_id)
            data.update(plain)
            self._save(table_id, record_id, data)
        return changes

    def set_values(self, table_id: str, values: Mapping[str, Mapping[str, Any]]) -> set[str]:
        """Write computed values ``{record_id: {field_id: value}}``.

        Returns the ids of records whose stored value actually changed.
        """
        current = self.get_many(table_id, values.keys())
        changed: set[str] = set()
        for record_id, cells in values.items():
            data = current.get(record_id)
            if data is None:
                continue
            if all(data.get(k) == v for k, v in cells.items()):
                continue
            data.update(cells)
            self._save(table_id, record_id, data)
            changed.add(record_id)
        return changed

    def delete(self, table_id: str, record_ids: Sequence[str]) -> list[LinkChange]:
        """Delete records and unlink them everywhere.

        Returns, per link field pointing at this table, the records that lost
        a link (their cells are rewritten here).
        """
        name = self.db_table(table_id)
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return []
        own_links = [d.id for d in self._catalog.fields_for_table(table_id) if d.is_link]
        changes: list[LinkChange] = []

        for link in self._catalog.link_fields_to(table_id):
            referencing = self.records_linking_to(link.id, ids)
            if not referencing:
                continue
            for chunk in chunked(ids):
                self.execute(
                    f"DELETE FROM ts_link WHERE field_id = ? "
                    f"AND foreign_record_id IN ({placeholders(len(chunk))})",
                    (link.id, *chunk),
                )
            surviving = [r for r in referencing if r not in ids or link.table_id != table_id]
            for record_id in surviving:
                data = self.get(link.table_id, record_id)
                if data is None:
                    continue
                data[link.id] = self.linked_ids(link.id, record_id)
                self._save(link.table_id, record_id, data)
            changes.append(LinkChange(link.table_id, link.id, set(surviving)))

        for chunk in chunked(ids):
            ph = placeholders(len(chunk))
            if own_links:
                self.execute(
                    f"DELETE FROM ts_link WHERE field_id IN ({placeholders(len(own_links))}) "
                    f"AND record_id IN ({ph})",
                    (*own_links, *chunk),
                )
            self.execute(f"DELETE FROM {name} WHERE __id IN ({ph})", tuple(chunk))
        return changes

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _save(self, table_id: str, record_id: str, data: dict[str, Any]) -> None:
        name = self.db_table(table_id)
        self.execute(
            f"UPDATE {name} SET __data = ?, __version = __version + 1, "
            f"__last_modified_time = ? WHERE __id = ?",
            (json.dumps(data, default=str), to_db(utc_now()), record_id),
        )

    def _replace_links(self, link_field_id: str, record_id: str, foreign_ids: Sequence[str]) -> None:
        self.execute(
            "DELETE FROM ts_link WHERE field_id = ? AND record_id = ?",
            (link_field_id, record_id),
        )
        self.execute_many(
            "INSERT INTO ts_link (field_id, record_id, foreign_record_id, position) VALUES (?, ?, ?, ?)",
            [(link_field_id, record_id, fid, pos) for pos, fid in enumerate(foreign_ids)],
        )

    def _write_link(
        self,
        record_id: str,
        descriptor: FieldDescriptor,
        value: Any,
    ) -> tuple[list[str], LinkChange | None]:
        kind: LinkKind = descriptor.kind  # type: ignore[assignment]
        new_ids = normalize_link_value(value)
        if not kind.relationship.is_multiple:
            new_ids = new_ids[:1]
        existing = self.get_many(kind.foreign_table_id, new_ids)
        for foreign_id in new_ids:
            if foreign_id not in existing:
                raise RecordNotFoundError(kind.foreign_table_id, foreign_id)

        old_ids = self.linked_ids(descriptor.id, record_id)
        self._replace_links(descriptor.id, record_id, new_ids)

        if kind.is_one_way or not kind.symmetric_field_id:
            return new_ids, None

        symmetric = kind.symmetric_field_id
        removed = [f for f in old_ids if f not in new_ids]
        added = [f for f in new_ids if f not in old_ids]
        for foreign_id in removed + added:
            current = self.linked_ids(symmetric, foreign_id)
            if foreign_id in removed:
                updated = [r for r in current if r != record_id]
            else:
                updated = current + [record_id] if record_id not in current else current
            self._replace_links(symmetric, foreign_id, updated)
            data = self.get(kind.foreign_table_id, foreign_id) or {}
            data[symmetric] = updated
            self._save(kind.foreign_table_id, foreign_id, data)
        if not (removed or added):
            return new_ids, None
        return new_ids, LinkChange(kind.foreign_table_id, symmetric, set(removed + added))
