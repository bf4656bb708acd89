"""Outbox data models.

Row-level dataclasses for the computed-update outbox and its dead-letter
sink. JSON payload columns are decoded leniently when a row is read so that
a poisoned task can still be listed and inspected; the strict decode into
plan objects happens in :meth:`OutboxTask.decode_plan`, which raises
:class:`PlanDecodeError` and sends the task straight to the dead-letter store.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tablespine.enums import ChangeType, TaskStatus
from tablespine.errors import PlanDecodeError
from tablespine.graph.planner import PropagationEdge, SeedGroup, UpdateStep
from tablespine.timestamps import FAR_FUTURE, from_db


def _loads(value: Any, default: Any) -> Any:
    """Decode a JSON column; undecodable text is kept as-is for inspection."""
    if value is None:
        return default
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


@dataclass
class OutboxTaskInput:
    """Everything needed to enqueue one task."""

    base_id: str
    seed_table_id: str
    change_type: ChangeType
    steps: list[dict[str, Any]]
    edges: list[dict[str, Any]] = field(default_factory=list)
    seed_record_ids: list[str] = field(default_factory=list)
    seed_groups: list[dict[str, Any]] = field(default_factory=list)
    estimated_complexity: int = 0
    run_id: str = ""
    origin_run_ids: list[str] = field(default_factory=list)
    run_total_steps: int = 0
    run_completed_steps_before: int = 0
    affected_table_ids: list[str] = field(default_factory=list)
    affected_field_ids: list[str] = field(default_factory=list)
    sync_max_level: int | None = None
    dirty_stats: dict[str, Any] | None = None
    max_attempts: int | None = None
    plan_hash: str | None = None
    parked: bool = False


@dataclass
class OutboxTask:
    """A row of ``computed_update_outbox``."""

    id: str
    base_id: str
    seed_table_id: str
    change_type: str
    status: TaskStatus
    plan_hash: str
    run_id: str
    steps: Any = field(default_factory=list)
    edges: Any = field(default_factory=list)
    seed_record_ids: list[str] = field(default_factory=list)
    seed_groups: Any = field(default_factory=list)
    attempts: int = 0
    max_attempts: int = 5
    next_run_at: datetime | None = None
    locked_at: datetime | None = None
    locked_by: str | None = None
    last_error: str | None = None
    estimated_complexity: int = 0
    dirty_stats: Any = None
    origin_run_ids: list[str] = field(default_factory=list)
    run_total_steps: int = 0
    run_completed_steps_before: int = 0
    affected_table_ids: list[str] = field(default_factory=list)
    affected_field_ids: list[str] = field(default_factory=list)
    sync_max_level: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def step_count(self) -> int:
        return len(self.steps) if isinstance(self.steps, list) else 0

    @property
    def is_parked(self) -> bool:
        """Waiting for its predecessor in a chained run."""
        return self.status is TaskStatus.PENDING and self.next_run_at == FAR_FUTURE

    def decode_plan(self) -> tuple[list[SeedGroup], list[UpdateStep], list[PropagationEdge]]:
        """Strictly decode the persisted plan.

        Raises:
            PlanDecodeError: the payload is not a valid plan
        """
        try:
            ChangeType(self.change_type)
            if not isinstance(self.steps, list) or not isinstance(self.edges, list):
                raise TypeError("steps and edges must be lists")
            steps = [UpdateStep.from_dict(s) for s in self.steps]
            edges = [PropagationEdge.from_dict(e) for e in self.edges]
            if isinstance(self.seed_groups, list) and self.seed_groups:
                groups = [SeedGroup.from_dict(g) for g in self.seed_groups]
            else:
                groups = [SeedGroup(self.seed_table_id, tuple(self.seed_record_ids))]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise PlanDecodeError(
                f"Task {self.id} has an undecodable plan: {exc}", cause=exc
            ).with_context(task_id=self.id, run_id=self.run_id) from exc
        return groups, steps, edges

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "base_id": self.base_id,
            "seed_table_id": self.seed_table_id,
            "seed_record_ids": list(self.seed_record_ids),
            "seed_groups": self.seed_groups,
            "change_type": self.change_type,
            "steps": self.steps,
            "edges": self.edges,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "locked_at": self.locked_at.isoformat() if self.locked_at else None,
            "locked_by": self.locked_by,
            "last_error": self.last_error,
            "estimated_complexity": self.estimated_complexity,
            "plan_hash": self.plan_hash,
            "dirty_stats": self.dirty_stats,
            "run_id": self.run_id,
            "origin_run_ids": list(self.origin_run_ids),
            "run_total_steps": self.run_total_steps,
            "run_completed_steps_before": self.run_completed_steps_before,
            "affected_table_ids": list(self.affected_table_ids),
            "affected_field_ids": list(self.affected_field_ids),
            "sync_max_level": self.sync_max_level,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class DeadLetterEntry(OutboxTask):
    """A row of ``computed_update_dead_letter``: a task that will not be retried."""

    trace_data: str | None = None
    failed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["trace_data"] = self.trace_data
        data["failed_at"] = self.failed_at.isoformat() if self.failed_at else None
        return data


@dataclass
class RunProgress:
    """Completion of one cascading run across its tasks."""

    run_id: str
    total_steps: int
    completed_steps: int
    pending_tasks: int = 0
    processing_tasks: int = 0
    done_tasks: int = 0
    dead_letters: int = 0

    @property
    def percent(self) -> float:
        if self.total_steps <= 0:
            return 100.0
        return round(100.0 * min(self.completed_steps, self.total_steps) / self.total_steps, 2)

    @property
    def is_complete(self) -> bool:
        return self.pending_tasks == 0 and self.processing_tasks == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "percent": self.percent,
            "pending_tasks": self.pending_tasks,
            "processing_tasks": self.processing_tasks,
            "done_tasks": self.done_tasks,
            "dead_letters": self.dead_letters,
            "is_complete": self.is_complete,
        }


def _task_fields(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "base_id": row["base_id"],
        "seed_table_id": row["seed_table_id"],
        "change_type": row["change_type"],
        "status": TaskStatus(row["status"]),
        "plan_hash": row["plan_hash"],
        "run_id": row["run_id"],
        "steps": _loads(row.get("steps"), []),
        "edges": _loads(row.get("edges"), []),
        "seed_record_ids": _as_list(_loads(row.get("seed_record_ids"), [])),
        "seed_groups": _loads(row.get("seed_groups"), []),
        "attempts": row.get("attempts") or 0,
        "max_attempts": row.get("max_attempts") or 0,
        "next_run_at": from_db(row.get("next_run_at")),
        "locked_at": from_db(row.get("locked_at")),
        "locked_by": row.get("locked_by"),
        "last_error": row.get("last_error"),
        "estimated_complexity": row.get("estimated_complexity") or 0,
        "dirty_stats": _loads(row.get("dirty_stats"), None),
        "origin_run_ids": _as_list(_loads(row.get("origin_run_ids"), [])),
        "run_total_steps": row.get("run_total_steps") or 0,
        "run_completed_steps_before": row.get("run_completed_steps_before") or 0,
        "affected_table_ids": _as_list(_loads(row.get("affected_table_ids"), [])),
        "affected_field_ids": _as_list(_loads(row.get("affected_field_ids"), [])),
        "sync_max_level": row.get("sync_max_level"),
        "created_at": from_db(row.get("created_at")),
        "updated_at": from_db(row.get("updated_at")),
    }


def row_to_task(row: dict[str, Any]) -> OutboxTask:
    """Convert an outbox row (as a dict) to an :class:`OutboxTask`."""
    return OutboxTask(**_task_fields(row))


def row_to_dead_letter(row: dict[str, Any]) -> DeadLetterEntry:
    """Convert a dead-letter row (as a dict) to a :class:`DeadLetterEntry`."""
    return DeadLetterEntry(
        **_task_fields(row),
        trace_data=row.get("trace_data"),
        failed_at=from_db(row.get("failed_at")),
    )
