"""
Dependency Planner — turn a record mutation into ordered recomputation steps.

Manifesto:
    Editing one cell can invalidate fields several tables away, through chains
    that may loop back on themselves. The planner answers "what must be
    recomputed, in which order" without ever refusing a mutation:
    - **Iterative:** an explicit worklist, never recursion, so stack depth does
      not depend on graph depth or on cycles
    - **Levelled:** a field is scheduled strictly after every field it reads
      from (longest-path depth)
    - **Cycle tolerant:** fields on a cycle are computed once, best-effort, and
      the plan carries a warning instead of failing

Architecture:
    ::

        seed groups (table, records, changed fields)
              │
              ▼
        1. breadth-first walk over ReferenceEdge (visited set, worklist)
              │   collects reachable fields + traversed edges
              ▼
        2. Kahn's algorithm over the reachable computed fields
              │   level = longest path from the seeds
              │   leftovers = cycle members → warning, scheduled last
              ▼
        3. steps grouped by (level, table), edges annotated with how dirty
           records propagate (same record / link traversal / whole table)
              │
              ▼
        ComputedPlan(steps, edges, warnings, estimated_complexity)

Examples:
    >>> planner = DependencyPlanner(catalog, references)
    >>> plan = planner.plan("tblOrders", ["rec1"], ChangeType.UPDATE, field_ids=["fldAmount..."])
    >>> [(s.level, s.table_id, s.field_ids) for s in plan.steps]
    [(0, 'tblOrders', ('fldTotal...',)), (1, 'tblCustomers', ('fldSpend...',))]

Tags:
    planner, dependency-graph, topological-sort, cycle-detection, tablespine
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from tablespine.catalog import FieldCatalog
from tablespine.enums import ChangeType, Propagation, RecordScope
from tablespine.fields.models import (
    ConditionalLookupKind,
    ConditionalRollupKind,
    FieldDescriptor,
    LookupKind,
    RollupKind,
)
from tablespine.graph.references import ReferenceRepository
from tablespine.logging import get_logger

logger = get_logger(__name__)

CYCLE_WARNING = "Computed field dependency cycle detected"


@dataclass(frozen=True)
class SeedGroup:
    """Records of one table touched by a mutation, and which of their fields changed.

    ``field_ids`` of None means every field of the table.
    """

    table_id: str
    record_ids: tuple[str, ...] = ()
    field_ids: tuple[str, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table_id": self.table_id,
            "record_ids": list(self.record_ids),
            "field_ids": list(self.field_ids) if self.field_ids is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SeedGroup:
        field_ids = data.get("field_ids")
        return cls(
            table_id=data["table_id"],
            record_ids=tuple(data.get("record_ids") or ()),
            field_ids=tuple(field_ids) if field_ids is not None else None,
        )


@dataclass(frozen=True)
class UpdateStep:
    """Recompute ``field_ids`` of ``table_id``, in order, at one propagation level."""

    table_id: str
    level: int
    field_ids: tuple[str, ...]
    operations: tuple[str, ...]
    record_scope: RecordScope = RecordScope.DIRTY

    def to_dict(self) -> dict[str, Any]:
        return {
            "table_id": self.table_id,
            "level": self.level,
            "field_ids": list(self.field_ids),
            "operations": list(self.operations),
            "record_scope": self.record_scope.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UpdateStep:
        return cls(
            table_id=data["table_id"],
            level=int(data["level"]),
            field_ids=tuple(data["field_ids"]),
            operations=tuple(data.get("operations") or ()),
            record_scope=RecordScope(data.get("record_scope", RecordScope.DIRTY.value)),
        )


@dataclass(frozen=True)
class PropagationEdge:
    """A traversed dependency edge and how it moves dirty records."""

    from_field_id: str
    to_field_id: str
    from_table_id: str
    to_table_id: str
    propagation: Propagation
    level: int
    link_field_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_field_id": self.from_field_id,
            "to_field_id": self.to_field_id,
            "from_table_id": self.from_table_id,
            "to_table_id": self.to_table_id,
            "propagation": self.propagation.value,
            "level": self.level,
            "link_field_id": self.link_field_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PropagationEdge:
        return cls(
            from_field_id=data["from_field_id"],
            to_field_id=data["to_field_id"],
            from_table_id=data["from_table_id"],
            to_table_id=data["to_table_id"],
            propagation=Propagation(data["propagation"]),
            level=int(data["level"]),
            link_field_id=data.get("link_field_id"),
        )


@dataclass
class ComputedPlan:
    change_type: ChangeType
    seed_groups: list[SeedGroup]
    steps: list[UpdateStep] = field(default_factory=list)
    edges: list[PropagationEdge] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    estimated_complexity: int = 0
    affected_table_ids: list[str] = field(default_factory=list)
    affected_field_ids: list[str] = field(default_factory=list)
    cycle_field_ids: list[str] = field(default_factory=list)

    @property
    def seed_table_id(self) -> str:
        return self.seed_groups[0].table_id if self.seed_groups else ""

    @property
    def seed_record_ids(self) -> list[str]:
        return list(self.seed_groups[0].record_ids) if self.seed_groups else []

    @property
    def is_empty(self) -> bool:
        return not self.steps

    @property
    def max_level(self) -> int:
        return max((s.level for s in self.steps), default=-1)

    def to_impact(self) -> dict[str, Any]:
        """Shape returned to callers previewing a mutation."""
        return {
            "affectedFields": list(self.affected_field_ids),
            "affectedTables": list(self.affected_table_ids),
            "warnings": list(self.warnings),
            "estimatedComplexity": self.estimated_complexity,
            "stepCount": len(self.steps),
            "levels": self.max_level + 1,
        }


def _propagation_for(
    source: FieldDescriptor | None,
    target: FieldDescriptor,
) -> tuple[Propagation, str | None]:
    kind = target.kind
    if isinstance(kind, (ConditionalLookupKind, ConditionalRollupKind)):
        if source is not None and source.table_id == target.table_id:
            return Propagation.SAME_RECORD, None
        return Propagation.ALL_TARGET_RECORDS, None
    if source is None or source.table_id == target.table_id:
        return Propagation.SAME_RECORD, None
    if isinstance(kind, (LookupKind, RollupKind)):
        return Propagation.LINK_TRAVERSAL, kind.link_field_id
    # cross-table reference without a link: every record may be affected
    return Propagation.ALL_TARGET_RECORDS, None


class DependencyPlanner:
    """Builds :class:`ComputedPlan` objects from the reference graph."""

    def __init__(self, catalog: FieldCatalog, references: ReferenceRepository):
        self._catalog = catalog
        self._references = references

    def plan(
        self,
        seed_table_id: str,
        seed_record_ids: Sequence[str],
        change_type: ChangeType | str,
        field_ids: Sequence[str] | None = None,
    ) -> ComputedPlan:
        group = SeedGroup(
            table_id=seed_table_id,
            record_ids=tuple(seed_record_ids),
            field_ids=tuple(field_ids) if field_ids is not None else None,
        )
        return self.plan_groups([group], change_type)

    def plan_groups(
        self,
        groups: Sequence[SeedGroup],
        change_type: ChangeType | str,
    ) -> ComputedPlan:
        change_type = ChangeType(change_type)
        plan = ComputedPlan(change_type=change_type, seed_groups=list(groups))
        if not groups:
            return plan

        seeds, created_targets = self._resolve_seeds(groups, change_type)
        order, reached, traversed = self._walk(seeds)

        descriptors = self._catalog.get_fields(list(seeds) + order)
        candidates = list(dict.fromkeys(created_targets + order + [s for s in seeds if s in reached]))
        targets = [f for f in candidates if f in descriptors and descriptors[f].is_computed]
        if not targets:
            return plan

        levels, cyclic = self._levels(targets, traversed)
        if cyclic:
            plan.cycle_field_ids = cyclic
            plan.warnings.append(f"{CYCLE_WARNING}: {', '.join(cyclic)}")
            logger.warning(
                "computed_dependency_cycle",
                field_ids=cyclic,
                seed_table_id=plan.seed_table_id,
            )

        plan.steps = self._build_steps(targets, levels, descriptors)
        plan.edges = self._build_edges(traversed, levels, descriptors)
        plan.affected_field_ids = targets
        plan.affected_table_ids = list(dict.fromkeys(s.table_id for s in plan.steps))

        seed_count = sum(len(g.record_ids) for g in groups)
        plan.estimated_complexity = len(plan.steps) * max(1, seed_count) + len(plan.edges)

        logger.debug(
            "computed_plan_built",
            change_type=change_type.value,
            seed_table_id=plan.seed_table_id,
            steps=len(plan.steps),
            edges=len(plan.edges),
            complexity=plan.estimated_complexity,
        )
        return plan

    # ------------------------------------------------------------------ #
    # Seeds
    # ------------------------------------------------------------------ #

    def _resolve_seeds(
        self,
        groups: Sequence[SeedGroup],
        change_type: ChangeType,
    ) -> tuple[dict[str, str], list[str]]:
        """Seed field id → table id, plus computed fields new records need."""
        seeds: dict[str, str] = {}
        created: list[str] = []
        for group in groups:
            if group.field_ids is None:
                table_fields = self._catalog.fields_for_table(group.table_id)
                for descriptor in table_fields:
                    seeds.setdefault(descriptor.id, group.table_id)
                if change_type is ChangeType.CREATE:
                    created.extend(d.id for d in table_fields if d.is_computed)
            else:
                for field_id in group.field_ids:
                    seeds.setdefault(field_id, group.table_id)
        return seeds, created

    # ------------------------------------------------------------------ #
    # 1. Breadth-first walk
    # ------------------------------------------------------------------ #

    def _walk(self, seeds: dict[str, str]) -> tuple[list[str], set[str], list[tuple[str, str]]]:
        """Returns (discovered fields in BFS order, every edge target, traversed edges).

        Each field is expanded at most once; a revisit ends that branch.
        """
        visited: set[str] = set(seeds)
        order: list[str] = []
        reached: set[str] = set()
        traversed: list[tuple[str, str]] = []
        frontier: deque[str] = deque(seeds)

        while frontier:
            batch = list(frontier)
            frontier.clear()
            for edge in self._references.dependents_of(batch):
                traversed.append((edge.from_field_id, edge.to_field_id))
                reached.add(edge.to_field_id)
                if edge.to_field_id in visited:
                    continue
                visited.add(edge.to_field_id)
                order.append(edge.to_field_id)
                frontier.append(edge.to_field_id)
        return order, reached, traversed

    # ------------------------------------------------------------------ #
    # 2. Levels
    # ------------------------------------------------------------------ #

    @staticmethod
    def _levels(
        targets: list[str],
        traversed: list[tuple[str, str]],
    ) -> tuple[dict[str, int], list[str]]:
        """Longest-path levels via Kahn's algorithm.

        Fields left unsorted sit on (or behind) a cycle; they are returned in
        discovery order and placed one level after the deepest sorted field.
        """
        target_set = set(targets)
        successors: dict[str, list[str]] = {t: [] for t in targets}
        indegree: dict[str, int] = {t: 0 for t in targets}
        for src, dst in dict.fromkeys(traversed):
            if src in target_set and dst in target_set:
                successors[src].append(dst)
                indegree[dst] += 1

        levels: dict[str, int] = {}
        ready = deque(t for t in targets if indegree[t] == 0)
        for t in ready:
            levels[t] = 0
        while ready:
            node = ready.popleft()
            for succ in successors[node]:
                levels[succ] = max(levels.get(succ, 0), levels[node] + 1)
                indegree[succ] -= 1
                if indegree[succ] == 0:
                    ready.append(succ)

        cyclic = [t for t in targets if indegree[t] > 0]
        if cyclic:
            cycle_level = max(levels.values(), default=-1) + 1
            for t in cyclic:
                levels[t] = cycle_level
        return levels, cyclic

    # ------------------------------------------------------------------ #
    # 3. Steps and edges
    # ------------------------------------------------------------------ #

    @staticmethod
    def _build_steps(
        targets: list[str],
        levels: dict[str, int],
        descriptors: dict[str, FieldDescriptor],
    ) -> list[UpdateStep]:
        grouped: dict[tuple[int, str], list[str]] = {}
        for field_id in targets:
            key = (levels[field_id], descriptors[field_id].table_id)
            grouped.setdefault(key, []).append(field_id)

        steps = []
        for (level, table_id) in sorted(grouped):
            field_ids = grouped[(level, table_id)]
            kinds = [descriptors[f].kind for f in field_ids]
            scope = (
                RecordScope.ALL
                if any(isinstance(k, (ConditionalLookupKind, ConditionalRollupKind)) for k in kinds)
                else RecordScope.DIRTY
            )
            steps.append(
                UpdateStep(
                    table_id=table_id,
                    level=level,
                    field_ids=tuple(field_ids),
                    operations=tuple(k.name.value for k in kinds),
                    record_scope=scope,
                )
            )
        return steps

    @staticmethod
    def _build_edges(
        traversed: Iterable[tuple[str, str]],
        levels: dict[str, int],
        descriptors: dict[str, FieldDescriptor],
    ) -> list[PropagationEdge]:
        edges = []
        for src, dst in dict.fromkeys(traversed):
            if dst not in levels:
                continue
            source = descriptors.get(src)
            target = descriptors[dst]
            propagation, link_field_id = _propagation_for(source, target)
            edges.append(
                PropagationEdge(
                    from_field_id=src,
                    to_field_id=dst,
                    from_table_id=source.table_id if source is not None else target.table_id,
                    to_table_id=target.table_id,
                    propagation=propagation,
                    level=levels[dst],
                    link_field_id=link_field_id,
                )
            )
        edges.sort(key=lambda e: e.level)
        return edges
