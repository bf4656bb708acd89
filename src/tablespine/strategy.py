"""
Hybrid update strategy — decide what runs inline and what is deferred.

Manifesto:
    Typing into one cell must stay fast; a cascade over thousands of rows must
    not run on the request path. The strategy looks at a plan's estimated
    complexity:
    - **Small plans** run entirely inside the triggering transaction
    - **Large plans** run their first levels inline (``sync_max_level``) and
      enqueue the rest as outbox tasks of one run
    - **Very long remainders** are split into chained tasks of at most
      ``outbox_max_steps_per_task`` steps, each released by its predecessor

Architecture:
    ::

        ComputedPlan
              │
              ├─ empty ─────────────────────────────► mode "none"
              ├─ complexity <= threshold ─► apply all ► mode "sync"
              └─ otherwise
                   ├─ steps with level <= sync_max_level ─► apply inline
                   └─ remaining steps ─► chunks ─► enqueue (first due, rest parked)
                                                  ► mode "hybrid" / "async"

Tags:
    strategy, hybrid, outbox, dispatch, tablespine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tablespine.graph.planner import ComputedPlan, UpdateStep
from tablespine.hashing import compute_hash, compute_plan_hash
from tablespine.ids import RUN_PREFIX, generate_id
from tablespine.logging import get_logger
from tablespine.outbox.models import OutboxTaskInput
from tablespine.outbox.queue import ComputedUpdateOutbox
from tablespine.records.updater import ComputedUpdater, UpdateResult
from tablespine.settings import TableSpineSettings, get_settings

logger = get_logger(__name__)


@dataclass
class DispatchResult:
    """What happened to a plan."""

    mode: str
    run_id: str | None = None
    inline: UpdateResult = field(default_factory=UpdateResult)
    task_ids: list[str] = field(default_factory=list)
    merged: bool = False
    inline_steps: int = 0
    deferred_steps: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "run_id": self.run_id,
            "inline": self.inline.to_dict(),
            "task_ids": list(self.task_ids),
            "merged": self.merged,
            "inline_steps": self.inline_steps,
            "deferred_steps": self.deferred_steps,
        }


def split_steps_by_level(steps: list[UpdateStep], sync_max_level: int) -> tuple[list[UpdateStep], list[UpdateStep]]:
    """Partition into (inline, deferred) by level."""
    inline = [s for s in steps if s.level <= sync_max_level]
    deferred = [s for s in steps if s.level > sync_max_level]
    return inline, deferred


def chunk_steps(steps: list[UpdateStep], size: int) -> list[list[UpdateStep]]:
    return [steps[i:i + size] for i in range(0, len(steps), size)]


class HybridUpdateStrategy:
    """Applies small plans inline and defers the rest to the outbox."""

    def __init__(
        self,
        updater: ComputedUpdater,
        outbox: ComputedUpdateOutbox,
        settings: TableSpineSettings | None = None,
    ):
        self._updater = updater
        self._outbox = outbox
        self._settings = settings or get_settings()

    def should_run_inline(self, plan: ComputedPlan) -> bool:
        return plan.estimated_complexity <= self._settings.sync_complexity_threshold

    def dispatch(self, plan: ComputedPlan, base_id: str, run_id: str | None = None) -> DispatchResult:
        if plan.is_empty:
            return DispatchResult(mode="none")

        if self.should_run_inline(plan):
            result = self._updater.apply(plan)
            return DispatchResult(mode="sync", inline=result, inline_steps=len(plan.steps))

        run_id = run_id or generate_id(RUN_PREFIX)
        sync_max_level = self._settings.sync_max_level
        inline_steps, deferred_steps = split_steps_by_level(plan.steps, sync_max_level)

        dispatch = DispatchResult(
            mode="hybrid" if inline_steps else "async",
            run_id=run_id,
            inline_steps=len(inline_steps),
            deferred_steps=len(deferred_steps),
        )
        if inline_steps:
            dispatch.inline = self._updater.apply(plan, inline_steps)
        if deferred_steps:
            self._enqueue(plan, base_id, run_id, inline_steps, deferred_steps, sync_max_level, dispatch)

        logger.info(
            "computed_plan_dispatched",
            mode=dispatch.mode,
            run_id=run_id,
            complexity=plan.estimated_complexity,
            inline_steps=dispatch.inline_steps,
            deferred_steps=dispatch.deferred_steps,
            tasks=len(dispatch.task_ids),
            merged=dispatch.merged,
        )
        return dispatch

    def _enqueue(
        self,
        plan: ComputedPlan,
        base_id: str,
        run_id: str,
        inline_steps: list[UpdateStep],
        deferred_steps: list[UpdateStep],
        sync_max_level: int,
        dispatch: DispatchResult,
    ) -> None:
        chunks = chunk_steps(deferred_steps, self._settings.outbox_max_steps_per_task)
        deferred_dicts = [s.to_dict() for s in deferred_steps]
        edges = [e.to_dict() for e in plan.edges]
        seed_groups = [g.to_dict() for g in plan.seed_groups]
        seed_record_ids = list(dict.fromkeys(rid for g in plan.seed_groups for rid in g.record_ids))
        plan_hash = compute_plan_hash(plan.change_type.value, plan.seed_table_id, deferred_dicts)

        completed_before = len(inline_steps)
        for index, chunk in enumerate(chunks):
            task = OutboxTaskInput(
                base_id=base_id,
                seed_table_id=plan.seed_table_id,
                change_type=plan.change_type,
                steps=[s.to_dict() for s in chunk],
                edges=edges,
                seed_record_ids=seed_record_ids,
                seed_groups=seed_groups,
                estimated_complexity=plan.estimated_complexity,
                run_id=run_id,
                run_total_steps=len(plan.steps),
                run_completed_steps_before=completed_before,
                affected_table_ids=plan.affected_table_ids,
                affected_field_ids=plan.affected_field_ids,
                sync_max_level=sync_max_level,
                plan_hash=plan_hash if len(chunks) == 1 else compute_hash(plan_hash, index, length=64),
                parked=index > 0,
            )
            result = self._outbox.enqueue_or_merge(task)
            if result.merged:
                # an identical pending run covers the remaining chunks too
                dispatch.merged = True
                dispatch.task_ids.append(result.task_id)
                return
            dispatch.task_ids.append(result.task_id)
            completed_before += len(chunk)
