"""Step executor: push dirty records through a plan and recompute values.

Dirty records are tracked per table. For each level, the edges that enter
that level say which records of the target table are now stale:

- ``sameRecord``: the same records of the same table
- ``linkTraversal``: records whose link field points at a dirty foreign record
- ``allTargetRecords``: every record of the target table

Levels whose steps belong to a different outbox task are *replayed*: their
edges still propagate dirtiness (every reached record counts as dirty) but no
values are computed. That lets a deferred task resume from the original seeds
without the in-memory state of the transaction that planned it.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from tablespine.catalog import FieldCatalog
from tablespine.enums import Propagation, RecordScope
from tablespine.graph.planner import ComputedPlan, PropagationEdge, SeedGroup, UpdateStep
from tablespine.logging import get_logger
from tablespine.records.evaluator import RecordEvaluator, ValueEvaluator
from tablespine.records.store import RecordStore

logger = get_logger(__name__)


@dataclass
class UpdateResult:
    """Outcome of executing a set of steps."""

    changed: dict[str, set[str]] = field(default_factory=dict)
    steps_run: int = 0
    records_evaluated: int = 0

    @property
    def changed_count(self) -> int:
        return sum(len(ids) for ids in self.changed.values())

    def merge(self, other: UpdateResult) -> None:
        for table_id, ids in other.changed.items():
            self.changed.setdefault(table_id, set()).update(ids)
        self.steps_run += other.steps_run
        self.records_evaluated += other.records_evaluated

    def to_dict(self) -> dict[str, Any]:
        return {
            "changed": {t: sorted(ids) for t, ids in self.changed.items()},
            "steps_run": self.steps_run,
            "records_evaluated": self.records_evaluated,
        }


class ComputedUpdater:
    """Executes :class:`UpdateStep` lists against the record store."""

    def __init__(
        self,
        catalog: FieldCatalog,
        store: RecordStore,
        evaluator: ValueEvaluator | None = None,
    ):
        self._catalog = catalog
        self._store = store
        self._evaluator = evaluator or RecordEvaluator(store)

    def apply(self, plan: ComputedPlan, steps: Sequence[UpdateStep] | None = None) -> UpdateResult:
        """Run ``steps`` (default: all of the plan's steps)."""
        return self.run(plan.seed_groups, plan.steps if steps is None else steps, plan.edges)

    def run(
        self,
        seed_groups: Sequence[SeedGroup],
        steps: Sequence[UpdateStep],
        edges: Sequence[PropagationEdge],
    ) -> UpdateResult:
        result = UpdateResult()
        if not steps:
            return result

        dirty: dict[str, set[str]] = {}
        seeded: dict[str, set[str]] = {}
        for group in seed_groups:
            dirty.setdefault(group.table_id, set()).update(group.record_ids)
            seeded.setdefault(group.table_id, set()).update(group.record_ids)

        steps_at = {(s.level, s.table_id): s for s in steps}
        last_level = max(s.level for s in steps)
        edges_at: dict[tuple[int, str], list[PropagationEdge]] = {}
        for edge in edges:
            edges_at.setdefault((edge.level, edge.to_table_id), []).append(edge)

        descriptors = self._catalog.get_fields(f for s in steps for f in s.field_ids)
        all_ids_cache: dict[str, list[str]] = {}

        for level, table_id in sorted(set(edges_at) | set(steps_at)):
            if level > last_level:
                break
            reached = self._propagate(edges_at.get((level, table_id), []), dirty, all_ids_cache)
            step = steps_at.get((level, table_id))
            if step is None:
                dirty.setdefault(table_id, set()).update(reached)
                continue

            targets = reached | seeded.get(table_id, set())
            if step.record_scope is RecordScope.ALL and reached:
                targets |= set(self._all_ids(table_id, all_ids_cache))
            if not targets:
                continue

            changed = self._run_step(step, targets, descriptors, result)
            dirty.setdefault(table_id, set()).update(changed)
            if changed:
                result.changed.setdefault(table_id, set()).update(changed)
            result.steps_run += 1

        logger.debug(
            "computed_steps_applied",
            steps=result.steps_run,
            records_evaluated=result.records_evaluated,
            records_changed=result.changed_count,
        )
        return result

    def _all_ids(self, table_id: str, cache: dict[str, list[str]]) -> list[str]:
        if table_id not in cache:
            cache[table_id] = self._store.all_ids(table_id)
        return cache[table_id]

    def _propagate(
        self,
        edges: Iterable[PropagationEdge],
        dirty: dict[str, set[str]],
        all_ids_cache: dict[str, list[str]],
    ) -> set[str]:
        reached: set[str] = set()
        for edge in edges:
            source = dirty.get(edge.from_table_id)
            if not source:
                continue
            if edge.propagation is Propagation.SAME_RECORD:
                if edge.from_table_id == edge.to_table_id:
                    reached |= source
            elif edge.propagation is Propagation.LINK_TRAVERSAL and edge.link_field_id:
                reached.update(self._store.records_linking_to(edge.link_field_id, source))
            else:
                reached.update(self._all_ids(edge.to_table_id, all_ids_cache))
        return reached

    def _run_step(
        self,
        step: UpdateStep,
        targets: set[str],
        descriptors: dict,
        result: UpdateResult,
    ) -> set[str]:
        records = self._store.get_many(step.table_id, sorted(targets))
        if not records:
            return set()
        updates: dict[str, dict[str, Any]] = {rid: {} for rid in records}
        for field_id in step.field_ids:
            descriptor = descriptors.get(field_id)
            if descriptor is None:
                # field deleted since planning
                continue
            values = self._evaluator.evaluate_many(descriptor, records)
            for record_id, value in values.items():
                # later fields of the same step read the fresh value
                records[record_id][field_id] = value
                updates[record_id][field_id] = value
        result.records_evaluated += len(records)
        return self._store.set_values(step.table_id, updates)
