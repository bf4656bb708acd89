"""Table and field metadata.

The catalog is the read side the planner, updater and engine use to resolve
field ids to descriptors. Descriptors are stored next to the raw definition
they were normalized from so that a field can be re-normalized later.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from tablespine.errors import FieldNotFoundError, TableNotFoundError, ValidationError
from tablespine.fields.models import FieldDescriptor
from tablespine.ids import TABLE_PREFIX, generate_id, is_safe_identifier
from tablespine.repository import BaseRepository, placeholders
from tablespine.timestamps import to_db, utc_now


@dataclass(frozen=True)
class TableMeta:
    id: str
    base_id: str
    name: str
    db_table_name: str


class FieldCatalog(BaseRepository):
    """Reads and writes ``ts_table`` / ``ts_field``."""

    # ── Tables ───────────────────────────────────────────────────────────

    def create_table(self, base_id: str, name: str, table_id: str | None = None) -> TableMeta:
        table_id = table_id or generate_id(TABLE_PREFIX)
        if not is_safe_identifier(table_id):
            raise ValidationError(f"Invalid table id: {table_id!r}")
        meta = TableMeta(id=table_id, base_id=base_id, name=name, db_table_name=f"rec_{table_id}")
        self.insert(
            "ts_table",
            {
                "id": meta.id,
                "base_id": meta.base_id,
                "name": meta.name,
                "db_table_name": meta.db_table_name,
                "created_time": to_db(utc_now()),
            },
        )
        return meta

    def get_table(self, table_id: str) -> TableMeta:
        row = self.query_one(
            "SELECT id, base_id, name, db_table_name FROM ts_table WHERE id = ?",
            (table_id,),
        )
        if row is None:
            raise TableNotFoundError(table_id)
        return TableMeta(**row)

    def list_tables(self, base_id: str | None = None) -> list[TableMeta]:
        sql = "SELECT id, base_id, name, db_table_name FROM ts_table"
        params: tuple = ()
        if base_id is not None:
            sql += " WHERE base_id = ?"
            params = (base_id,)
        return [TableMeta(**row) for row in self.query(sql + " ORDER BY created_time, id", params)]

    # ── Fields ───────────────────────────────────────────────────────────

    def save_field(self, descriptor: FieldDescriptor, raw: dict[str, Any]) -> None:
        """Insert or replace a field's descriptor and raw definition."""
        self.execute(
            """
            INSERT INTO ts_field (id, table_id, name, kind, value_type, raw, descriptor, created_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                kind = excluded.kind,
                value_type = excluded.value_type,
                raw = excluded.raw,
                descriptor = excluded.descriptor
            """,
            (
                descriptor.id,
                descriptor.table_id,
                descriptor.name,
                descriptor.kind_name.value,
                descriptor.value_type,
                json.dumps(raw),
                json.dumps(descriptor.to_dict()),
                to_db(utc_now()),
            ),
        )

    def delete_field(self, field_id: str) -> None:
        self.execute("DELETE FROM ts_field WHERE id = ?", (field_id,))

    def get_field(self, field_id: str) -> FieldDescriptor:
        row = self.query_one("SELECT descriptor FROM ts_field WHERE id = ?", (field_id,))
        if row is None:
            raise FieldNotFoundError(field_id)
        return FieldDescriptor.from_dict(json.loads(row["descriptor"]))

    def get_raw(self, field_id: str) -> dict[str, Any]:
        row = self.query_one("SELECT raw FROM ts_field WHERE id = ?", (field_id,))
        if row is None:
            raise FieldNotFoundError(field_id)
        return json.loads(row["raw"])

    def get_fields(self, field_ids: Iterable[str]) -> dict[str, FieldDescriptor]:
        """Descriptors by id; unknown ids are skipped."""
        ids = list(dict.fromkeys(field_ids))
        if not ids:
            return {}
        rows = self.query(
            f"SELECT descriptor FROM ts_field WHERE id IN ({placeholders(len(ids))})",
            tuple(ids),
        )
        descriptors = [FieldDescriptor.from_dict(json.loads(r["descriptor"])) for r in rows]
        return {d.id: d for d in descriptors}

    def fields_for_table(self, table_id: str) -> list[FieldDescriptor]:
        rows = self.query(
            "SELECT descriptor FROM ts_field WHERE table_id = ? ORDER BY created_time, rowid",
            (table_id,),
        )
        return [FieldDescriptor.from_dict(json.loads(r["descriptor"])) for r in rows]

    def field_kinds(self, base_id: str | None = None) -> dict[str, str]:
        """Field id → kind name, the lookup the normalizer classifies against."""
        if base_id is None:
            rows = self.query("SELECT id, kind FROM ts_field")
        else:
            rows = self.query(
                "SELECT f.id, f.kind FROM ts_field f JOIN ts_table t ON t.id = f.table_id "
                "WHERE t.base_id = ?",
                (base_id,),
            )
        return {r["id"]: r["kind"] for r in rows}

    def link_fields(self) -> list[FieldDescriptor]:
        """Every link field, across tables."""
        rows = self.query("SELECT descriptor FROM ts_field WHERE kind = 'link' ORDER BY rowid")
        return [FieldDescriptor.from_dict(json.loads(r["descriptor"])) for r in rows]

    def link_fields_to(self, table_id: str) -> list[FieldDescriptor]:
        """Link fields whose foreign table is ``table_id``."""
        return [d for d in self.link_fields() if d.kind.foreign_table_id == table_id]
