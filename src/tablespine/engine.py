"""
Computed engine — schema management, record mutations and impact previews.

Manifesto:
    Callers should not have to know about reference edges, plans or the
    outbox. The engine is the single entry point that keeps them consistent:
    - **Schema:** creating a field normalizes it, stores it and rewrites its
      upstream reference edges in one transaction
    - **Mutations:** every insert, update and delete plans the cascade it
      causes and dispatches it (inline or deferred) in the same transaction
    - **Explain:** the same planning without the mutation, for previews

Architecture:
    ::

        ComputedEngine(conn)
          ├── create_table / create_field ── FieldCatalog, ReferenceRepository
          ├── insert / update / delete ───── RecordStore
          │        └─ seed groups ─► DependencyPlanner ─► HybridUpdateStrategy
          │                                                 ├─ ComputedUpdater (inline)
          │                                                 └─ ComputedUpdateOutbox (deferred)
          ├── explain(change_type, payload)
          └── calculate_orders ────────────── RecordOrderCalculator

Examples:
    >>> engine = ComputedEngine.open("memory")
    >>> table = engine.create_table("bse1", "Orders")
    >>> amount = engine.create_field({"tableId": table.id, "name": "Amount", "type": "number"})
    >>> [rid], _ = engine.insert_records(table.id, [{amount.id: 10}]).unpack()

Tags:
    engine, facade, mutations, explain, tablespine
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from tablespine.catalog import FieldCatalog, TableMeta
from tablespine.connection import SqliteConnection, create_connection
from tablespine.enums import ChangeType, OrderPosition, RecordScope
from tablespine.errors import FieldNotFoundError, RecordNotFoundError, ValidationError
from tablespine.fields.models import FieldDescriptor, FieldKindName, LinkKind
from tablespine.fields.normalizer import dependencies, normalize
from tablespine.graph.planner import ComputedPlan, DependencyPlanner, SeedGroup, UpdateStep
from tablespine.graph.references import ReferenceRepository
from tablespine.ids import FIELD_PREFIX, generate_id
from tablespine.logging import get_logger
from tablespine.outbox.dead_letter import DeadLetterStore
from tablespine.outbox.queue import ComputedUpdateOutbox
from tablespine.records.evaluator import RecordEvaluator
from tablespine.records.ordering import RecordOrderCalculator
from tablespine.records.store import LinkChange, RecordStore
from tablespine.records.updater import ComputedUpdater
from tablespine.settings import TableSpineSettings, get_settings
from tablespine.strategy import DispatchResult, HybridUpdateStrategy

logger = get_logger(__name__)


@dataclass
class MutationResult:
    """Records touched by a mutation and what happened to its cascade."""

    record_ids: list[str]
    plan: ComputedPlan
    dispatch: DispatchResult = field(default_factory=lambda: DispatchResult(mode="none"))

    @property
    def warnings(self) -> list[str]:
        return list(self.plan.warnings)

    def unpack(self) -> tuple[list[str], DispatchResult]:
        return self.record_ids, self.dispatch

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_ids": list(self.record_ids),
            "warnings": self.warnings,
            "impact": self.plan.to_impact() if not self.plan.is_empty else None,
            "dispatch": self.dispatch.to_dict(),
        }


def _link_seed_groups(changes: Iterable[LinkChange]) -> list[SeedGroup]:
    merged: dict[tuple[str, str], set[str]] = {}
    for change in changes:
        merged.setdefault((change.table_id, change.field_id), set()).update(change.record_ids)
    return [
        SeedGroup(table_id=table_id, record_ids=tuple(sorted(ids)), field_ids=(field_id,))
        for (table_id, field_id), ids in merged.items()
        if ids
    ]


class ComputedEngine:
    """Facade over the catalog, record store, planner, strategy and outbox."""

    def __init__(self, conn: SqliteConnection, settings: TableSpineSettings | None = None):
        self.conn = conn
        self.settings = settings or get_settings()
        self.catalog = FieldCatalog(conn)
        self.references = ReferenceRepository(conn)
        self.store = RecordStore(conn, self.catalog)
        self.planner = DependencyPlanner(self.catalog, self.references)
        self.updater = ComputedUpdater(self.catalog, self.store, RecordEvaluator(self.store))
        self.outbox = ComputedUpdateOutbox(conn, self.settings)
        self.dead_letters = DeadLetterStore(conn)
        self.strategy = HybridUpdateStrategy(self.updater, self.outbox, self.settings)
        self.ordering = RecordOrderCalculator(self.store, self.settings)

    @classmethod
    def open(cls, database_url: str | None = None, settings: TableSpineSettings | None = None) -> ComputedEngine:
        """Open (and initialize) a database and wrap it in an engine."""
        settings = settings or get_settings()
        conn, _info = create_connection(database_url or settings.database_url, init_schema=True)
        return cls(conn, settings)

    # ------------------------------------------------------------------ #
    # Schema
    # ------------------------------------------------------------------ #

    def create_table(self, base_id: str, name: str, table_id: str | None = None) -> TableMeta:
        with self.conn.transaction():
            table = self.catalog.create_table(base_id, name, table_id)
            self.store.create_table(table.id)
        logger.info("table_created", table_id=table.id, base_id=base_id)
        return table

    def create_field(self, raw: Mapping[str, Any]) -> FieldDescriptor:
        """Normalize and store a field, rewrite its reference edges and compute its values.

        A two-way link without ``symmetricFieldId`` gets its symmetric field
        created on the foreign table.
        """
        raw = dict(raw)
        raw["id"] = raw.get("id") or generate_id(FIELD_PREFIX)
        table = self.catalog.get_table(raw.get("tableId", ""))

        with self.conn.transaction():
            known = self.catalog.field_kinds(table.base_id)
            descriptor = normalize(raw, known)
            symmetric_raw = None
            if isinstance(descriptor.kind, LinkKind):
                self.catalog.get_table(descriptor.kind.foreign_table_id)
                if not descriptor.kind.is_one_way and descriptor.kind.symmetric_field_id is None:
                    raw, symmetric_raw = self._with_symmetric(raw, descriptor, table)
                    descriptor = normalize(raw, known)

            self.catalog.save_field(descriptor, raw)
            self.references.replace_dependencies(descriptor.id, dependencies(descriptor))
            if symmetric_raw is not None:
                symmetric = normalize(symmetric_raw, {**known, descriptor.id: FieldKindName.LINK.value})
                self.catalog.save_field(symmetric, symmetric_raw)

            if descriptor.is_computed:
                self._backfill(descriptor)

        logger.info(
            "field_created",
            field_id=descriptor.id,
            table_id=descriptor.table_id,
            kind=descriptor.kind_name.value,
        )
        return descriptor

    def _with_symmetric(
        self,
        raw: dict[str, Any],
        descriptor: FieldDescriptor,
        table: TableMeta,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        kind: LinkKind = descriptor.kind  # type: ignore[assignment]
        symmetric_id = generate_id(FIELD_PREFIX)
        own_fields = [d for d in self.catalog.fields_for_table(table.id) if d.id != descriptor.id]
        symmetric_raw = {
            "id": symmetric_id,
            "tableId": kind.foreign_table_id,
            "name": table.name,
            "type": FieldKindName.LINK.value,
            "options": {
                "relationship": kind.relationship.inverse().value,
                "foreignTableId": table.id,
                "lookupFieldId": own_fields[0].id if own_fields else descriptor.id,
                "symmetricFieldId": descriptor.id,
            },
        }
        options = dict(raw.get("options") or {})
        options["symmetricFieldId"] = symmetric_id
        return {**raw, "options": options}, symmetric_raw

    def _backfill(self, descriptor: FieldDescriptor) -> None:
        record_ids = tuple(self.store.all_ids(descriptor.table_id))
        if not record_ids:
            return
        step = UpdateStep(
            table_id=descriptor.table_id,
            level=0,
            field_ids=(descriptor.id,),
            operations=(descriptor.kind_name.value,),
            record_scope=RecordScope.ALL,
        )
        self.updater.run([SeedGroup(descriptor.table_id, record_ids, ())], [step], [])
        # a redefined field may already have dependents
        plan = self.planner.plan(descriptor.table_id, record_ids, ChangeType.UPDATE, [descriptor.id])
        self.strategy.dispatch(plan, self.catalog.get_table(descriptor.table_id).base_id)

    def get_field(self, field_id: str) -> FieldDescriptor:
        return self.catalog.get_field(field_id)

    def list_fields(self, table_id: str) -> list[FieldDescriptor]:
        self.catalog.get_table(table_id)
        return self.catalog.fields_for_table(table_id)

    # ------------------------------------------------------------------ #
    # Records
    # ------------------------------------------------------------------ #

    def _check_writable(self, table_id: str, field_ids: Iterable[str]) -> None:
        ids = list(dict.fromkeys(field_ids))
        descriptors = self.catalog.get_fields(ids)
        for field_id in ids:
            descriptor = descriptors.get(field_id)
            if descriptor is None:
                raise FieldNotFoundError(field_id)
            if descriptor.table_id != table_id:
                raise ValidationError(f"Field {field_id} does not belong to table {table_id}", field_id=field_id)
            if descriptor.is_computed:
                raise ValidationError(f"Field {field_id} is computed and cannot be written", field_id=field_id)

    def _dispatch(self, table_id: str, groups: list[SeedGroup], change_type: ChangeType) -> tuple[ComputedPlan, DispatchResult]:
        plan = self.planner.plan_groups(groups, change_type)
        dispatch = self.strategy.dispatch(plan, self.catalog.get_table(table_id).base_id)
        return plan, dispatch

    def insert_records(
        self,
        table_id: str,
        rows: Sequence[Mapping[str, Any]],
        record_ids: Sequence[str] | None = None,
    ) -> MutationResult:
        self.catalog.get_table(table_id)
        if record_ids is not None and len(record_ids) != len(rows):
            raise ValidationError("record_ids must match rows one to one")
        self._check_writable(table_id, (f for row in rows for f in row))
        with self.conn.transaction():
            ids, link_changes = self.store.insert(table_id, rows, record_ids)
            groups = [SeedGroup(table_id, tuple(ids), None), *_link_seed_groups(link_changes)]
            plan, dispatch = self._dispatch(table_id, groups, ChangeType.CREATE)
        logger.info("records_inserted", table_id=table_id, count=len(ids), mode=dispatch.mode)
        return MutationResult(record_ids=ids, plan=plan, dispatch=dispatch)

    def update_records(self, table_id: str, updates: Mapping[str, Mapping[str, Any]]) -> MutationResult:
        """Write ``{record_id: {field_id: value}}`` and propagate."""
        self.catalog.get_table(table_id)
        field_ids = list(dict.fromkeys(f for values in updates.values() for f in values))
        self._check_writable(table_id, field_ids)
        with self.conn.transaction():
            link_changes: list[LinkChange] = []
            for record_id, values in updates.items():
                link_changes.extend(self.store.write(table_id, record_id, values))
            groups = [SeedGroup(table_id, tuple(updates), tuple(field_ids)), *_link_seed_groups(link_changes)]
            plan, dispatch = self._dispatch(table_id, groups, ChangeType.UPDATE)
        logger.info("records_updated", table_id=table_id, count=len(updates), mode=dispatch.mode)
        return MutationResult(record_ids=list(updates), plan=plan, dispatch=dispatch)

    def delete_records(self, table_id: str, record_ids: Sequence[str]) -> MutationResult:
        self.catalog.get_table(table_id)
        ids = list(dict.fromkeys(record_ids))
        with self.conn.transaction():
            for record_id in ids:
                if not self.store.exists(table_id, record_id):
                    raise RecordNotFoundError(table_id, record_id)
            link_changes = self.store.delete(table_id, ids)
            groups = [SeedGroup(table_id, tuple(ids), None), *_link_seed_groups(link_changes)]
            plan, dispatch = self._dispatch(table_id, groups, ChangeType.DELETE)
        logger.info("records_deleted", table_id=table_id, count=len(ids), mode=dispatch.mode)
        return MutationResult(record_ids=ids, plan=plan, dispatch=dispatch)

    def get_record(self, table_id: str, record_id: str) -> dict[str, Any]:
        """Cell values by field id."""
        data = self.store.get(table_id, record_id)
        if data is None:
            raise RecordNotFoundError(table_id, record_id)
        return data

    # ------------------------------------------------------------------ #
    # Previews and ordering
    # ------------------------------------------------------------------ #

    def explain(self, change_type: ChangeType | str, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Plan a mutation without applying it.

        ``payload``: ``tableId``, optional ``recordIds`` and ``fieldIds``.
        Returns ``{"computedImpact": {...}}``, or ``None`` as the impact when
        nothing would be recomputed.
        """
        try:
            change_type = ChangeType(change_type)
        except ValueError:
            raise ValidationError(f"Invalid change type: {change_type!r}") from None
        table_id = payload.get("tableId")
        if not table_id:
            raise ValidationError("payload.tableId is required")
        self.catalog.get_table(table_id)
        field_ids = payload.get("fieldIds")
        plan = self.planner.plan(table_id, list(payload.get("recordIds") or []), change_type, field_ids)
        return {"computedImpact": None if plan.is_empty else plan.to_impact()}

    def calculate_orders(
        self,
        table_id: str,
        view_id: str,
        anchor_id: str,
        position: OrderPosition | str,
        count: int,
    ) -> list[float]:
        with self.conn.transaction():
            return self.ordering.calculate_orders(table_id, view_id, anchor_id, position, count)

    def close(self) -> None:
        self.conn.close()
