"""
Outbox Queue — durable work queue for deferred recomputation.

Manifesto:
    Cascades over thousands of rows must not run on the request path, and must
    never be lost. The outbox is a table in the same store as the records, so
    a task is enqueued in the same transaction as the mutation that caused it.
    - **Idempotent enqueue:** a pending task with the same plan hash absorbs
      new seeds instead of creating a duplicate
    - **Atomic claim:** one conditional ``UPDATE ... RETURNING`` per claim,
      never read-then-write
    - **Bounded retries:** exponential backoff up to ``max_attempts``, then
      the dead-letter store with full lineage
    - **Lock expiry:** a task held by a dead worker becomes claimable again

Architecture:
    ::

        enqueue(input) ─────────────► pending ──claim()──► processing
              │ same hash pending?        ▲                  │   │
              └─► merge seeds, keep id    │ backoff          │   └─ mark_done() ─► done ─► purge_done()
                                          │                  │          │
                                          └── mark_failed() ◄┘          └─► release_successor()
                                                   │ exhausted / not retryable
                                                   ▼
                                     computed_update_dead_letter

    Chained tasks: a long plan is split into several tasks of one run. All but
    the first are *parked* (``next_run_at`` far in the future) and released
    one at a time when the predecessor commits, which keeps level order
    across tasks.

Examples:
    >>> outbox = ComputedUpdateOutbox(conn)
    >>> task_id = outbox.enqueue(OutboxTaskInput(base_id="bse1", seed_table_id="tblA", ...))
    >>> task = outbox.claim("worker-1")
    >>> outbox.mark_done(task, "worker-1")

Tags:
    outbox, queue, retry, dead-letter, idempotency, tablespine
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from tablespine.connection import SqliteConnection
from tablespine.enums import ChangeType, TaskStatus
from tablespine.errors import LockLostError, NotFoundError, is_retryable
from tablespine.hashing import compute_plan_hash
from tablespine.ids import RUN_PREFIX, TASK_PREFIX, generate_id
from tablespine.logging import get_logger
from tablespine.outbox.models import (
    OutboxTask,
    OutboxTaskInput,
    RunProgress,
    row_to_task,
)
from tablespine.outbox.retry import ExponentialBackoff
from tablespine.repository import BaseRepository
from tablespine.settings import TableSpineSettings, get_settings
from tablespine.timestamps import FAR_FUTURE, to_db, utc_now

logger = get_logger(__name__)

OUTBOX_TABLE = "computed_update_outbox"
DEAD_LETTER_TABLE = "computed_update_dead_letter"

_ELIGIBLE = "((status = 'pending' AND next_run_at <= ?) OR (status = 'processing' AND locked_at <= ?))"


@dataclass(frozen=True)
class EnqueueResult:
    task_id: str
    merged: bool


def _union(existing: list[Any], new: list[Any]) -> list[Any]:
    return list(dict.fromkeys([*existing, *new]))


def merge_seed_groups(existing: list[dict[str, Any]], new: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Union record ids of seed groups that name the same table and fields."""
    merged: dict[tuple, dict[str, Any]] = {}
    for group in [*existing, *new]:
        field_ids = group.get("field_ids")
        key = (group["table_id"], tuple(field_ids) if field_ids is not None else None)
        if key in merged:
            merged[key]["record_ids"] = _union(merged[key]["record_ids"], group.get("record_ids") or [])
        else:
            merged[key] = {
                "table_id": group["table_id"],
                "record_ids": list(group.get("record_ids") or []),
                "field_ids": list(field_ids) if field_ids is not None else None,
            }
    return list(merged.values())


def _error_message(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return str(error)


class ComputedUpdateOutbox(BaseRepository):
    """Enqueue, claim and settle computed-update tasks."""

    def __init__(
        self,
        conn: SqliteConnection,
        settings: TableSpineSettings | None = None,
        backoff: ExponentialBackoff | None = None,
    ):
        super().__init__(conn)
        self._settings = settings or get_settings()
        self._backoff = backoff or ExponentialBackoff.from_settings(self._settings)

    @property
    def backoff(self) -> ExponentialBackoff:
        return self._backoff

    # ------------------------------------------------------------------ #
    # Enqueue
    # ------------------------------------------------------------------ #

    def enqueue(self, task: OutboxTaskInput, now: datetime | None = None) -> str:
        """Persist a task; returns its id, or the id of the pending task it merged into."""
        return self.enqueue_or_merge(task, now).task_id

    def enqueue_or_merge(self, task: OutboxTaskInput, now: datetime | None = None) -> EnqueueResult:
        now = now or utc_now()
        change_type = ChangeType(task.change_type).value
        plan_hash = task.plan_hash or compute_plan_hash(change_type, task.seed_table_id, task.steps)
        run_id = task.run_id or generate_id(RUN_PREFIX)
        origin_run_ids = _union(task.origin_run_ids, [run_id])
        seed_groups = task.seed_groups or [
            {"table_id": task.seed_table_id, "record_ids": list(task.seed_record_ids), "field_ids": None}
        ]

        with self.transaction():
            if not task.parked:
                existing = self.query_one(
                    f"""
                    SELECT * FROM {OUTBOX_TABLE}
                    WHERE base_id = ? AND plan_hash = ? AND seed_table_id = ? AND change_type = ?
                      AND status = 'pending' AND next_run_at < ?
                    ORDER BY created_at, rowid
                    LIMIT 1
                    """,
                    (task.base_id, plan_hash, task.seed_table_id, change_type, to_db(FAR_FUTURE)),
                )
                if existing is not None:
                    self._merge_into(row_to_task(existing), task, seed_groups, origin_run_ids, now)
                    return EnqueueResult(task_id=existing["id"], merged=True)

            task_id = generate_id(TASK_PREFIX)
            stamp = to_db(now)
            self.insert(
                OUTBOX_TABLE,
                {
                    "id": task_id,
                    "base_id": task.base_id,
                    "seed_table_id": task.seed_table_id,
                    "seed_record_ids": json.dumps(list(task.seed_record_ids)),
                    "seed_groups": json.dumps(seed_groups),
                    "change_type": change_type,
                    "steps": json.dumps(task.steps),
                    "edges": json.dumps(task.edges),
                    "status": TaskStatus.PENDING.value,
                    "attempts": 0,
                    "max_attempts": task.max_attempts or self._settings.outbox_max_attempts,
                    "next_run_at": to_db(FAR_FUTURE) if task.parked else stamp,
                    "estimated_complexity": task.estimated_complexity,
                    "plan_hash": plan_hash,
                    "dirty_stats": json.dumps(task.dirty_stats) if task.dirty_stats is not None else None,
                    "run_id": run_id,
                    "origin_run_ids": json.dumps(origin_run_ids),
                    "run_total_steps": task.run_total_steps,
                    "run_completed_steps_before": task.run_completed_steps_before,
                    "affected_table_ids": json.dumps(task.affected_table_ids),
                    "affected_field_ids": json.dumps(task.affected_field_ids),
                    "sync_max_level": task.sync_max_level,
                    "created_at": stamp,
                    "updated_at": stamp,
                },
            )

        logger.info(
            "outbox_task_enqueued",
            task_id=task_id,
            run_id=run_id,
            base_id=task.base_id,
            seed_table_id=task.seed_table_id,
            steps=len(task.steps),
            parked=task.parked,
        )
        return EnqueueResult(task_id=task_id, merged=False)

    def _merge_into(
        self,
        existing: OutboxTask,
        task: OutboxTaskInput,
        seed_groups: list[dict[str, Any]],
        origin_run_ids: list[str],
        now: datetime,
    ) -> None:
        current_groups = existing.seed_groups if isinstance(existing.seed_groups, list) else []
        self.execute(
            f"""
            UPDATE {OUTBOX_TABLE}
            SET seed_record_ids = ?, seed_groups = ?, origin_run_ids = ?,
                estimated_complexity = MAX(estimated_complexity, ?), updated_at = ?
            WHERE id = ?
            """,
            (
                json.dumps(_union(existing.seed_record_ids, task.seed_record_ids)),
                json.dumps(merge_seed_groups(current_groups, seed_groups)),
                json.dumps(_union(existing.origin_run_ids, origin_run_ids)),
                task.estimated_complexity,
                to_db(now),
                existing.id,
            ),
        )
        logger.info(
            "outbox_task_merged",
            task_id=existing.id,
            run_id=existing.run_id,
            merged_run_ids=origin_run_ids,
            added_records=len(task.seed_record_ids),
        )

    # ------------------------------------------------------------------ #
    # Claim
    # ------------------------------------------------------------------ #

    def claim(self, worker_id: str, now: datetime | None = None) -> OutboxTask | None:
        """Claim the oldest eligible task for ``worker_id``.

        Eligible: pending and due, or processing with an expired lock.
        Reclaiming an expired lock counts as a failed attempt; a task that
        runs out of attempts that way is dead-lettered and the next one is
        tried.
        """
        now = now or utc_now()
        stamp = to_db(now)
        cutoff = to_db(now - timedelta(seconds=self._settings.outbox_lock_timeout_seconds))

        while True:
            with self.transaction():
                rows = self.query(
                    f"""
                    UPDATE {OUTBOX_TABLE}
                    SET status = 'processing',
                        attempts = attempts + (CASE WHEN status = 'processing' THEN 1 ELSE 0 END),
                        last_error = CASE WHEN status = 'processing'
                            THEN 'Lock expired (held by ' || COALESCE(locked_by, 'unknown') || ')'
                            ELSE last_error END,
                        locked_by = ?, locked_at = ?, updated_at = ?
                    WHERE id = (
                        SELECT id FROM {OUTBOX_TABLE}
                        WHERE {_ELIGIBLE}
                        ORDER BY created_at, rowid
                        LIMIT 1
                    )
                    AND {_ELIGIBLE}
                    RETURNING *
                    """,
                    (worker_id, stamp, stamp, stamp, cutoff, stamp, cutoff),
                )
                if not rows:
                    return None
                task = row_to_task(rows[0])
                if task.attempts < task.max_attempts:
                    logger.debug("outbox_task_claimed", task_id=task.id, worker_id=worker_id, attempts=task.attempts)
                    return task
                logger.warning("outbox_lock_expired_exhausted", task_id=task.id, attempts=task.attempts)
                self._dead_letter(rows[0], attempts=task.attempts, last_error=task.last_error, trace=None, now=now)
                self._dead_letter_successors(rows[0], now)

    def claim_batch(
        self,
        worker_id: str,
        now: datetime | None = None,
        limit: int | None = None,
        complexity_budget: int | None = None,
    ) -> list[OutboxTask]:
        """Claim up to ``limit`` tasks, stopping once their summed complexity reaches the budget."""
        limit = limit or self._settings.worker_batch_size
        budget = complexity_budget or self._settings.worker_complexity_budget
        claimed: list[OutboxTask] = []
        used = 0
        while len(claimed) < limit and used < budget:
            task = self.claim(worker_id, now)
            if task is None:
                break
            claimed.append(task)
            used += max(1, task.estimated_complexity)
        return claimed

    # ------------------------------------------------------------------ #
    # Settle
    # ------------------------------------------------------------------ #

    def mark_done(
        self,
        task: OutboxTask,
        worker_id: str,
        dirty_stats: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> str | None:
        """Mark a claimed task done and release its successor, if any.

        Returns the released successor id.

        Raises:
            LockLostError: ``worker_id`` no longer holds the task
        """
        now = now or utc_now()
        with self.transaction():
            cursor = self.execute(
                f"""
                UPDATE {OUTBOX_TABLE}
                SET status = 'done', locked_by = NULL, locked_at = NULL,
                    last_error = NULL, dirty_stats = ?, updated_at = ?
                WHERE id = ? AND status = 'processing' AND locked_by = ?
                """,
                (
                    json.dumps(dirty_stats) if dirty_stats is not None else None,
                    to_db(now),
                    task.id,
                    worker_id,
                ),
            )
            if cursor.rowcount == 0:
                raise LockLostError(task.id, worker_id)
            successor = self.release_successor(task, now)
        logger.info("outbox_task_done", task_id=task.id, run_id=task.run_id, successor_id=successor)
        return successor

    def mark_failed(
        self,
        task: OutboxTask,
        worker_id: str,
        error: BaseException | str,
        trace: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Record a failed attempt. Returns True if the task was dead-lettered.

        Raises:
            LockLostError: ``worker_id`` no longer holds the task
        """
        now = now or utc_now()
        message = _error_message(error)
        retryable = is_retryable(error) if isinstance(error, Exception) else True

        with self.transaction():
            row = self.query_one(
                f"SELECT * FROM {OUTBOX_TABLE} WHERE id = ? AND status = 'processing' AND locked_by = ?",
                (task.id, worker_id),
            )
            if row is None:
                raise LockLostError(task.id, worker_id)
            attempts = row["attempts"] + 1

            if attempts >= row["max_attempts"] or not retryable:
                self._dead_letter(row, attempts=attempts, last_error=message, trace=trace, now=now)
                self._dead_letter_successors(row, now)
                return True

            delay = self._backoff.delay_for_attempts(attempts)
            next_run_at = now + timedelta(seconds=delay)
            self.execute(
                f"""
                UPDATE {OUTBOX_TABLE}
                SET status = 'pending', attempts = ?, last_error = ?, next_run_at = ?,
                    locked_by = NULL, locked_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (attempts, message, to_db(next_run_at), to_db(now), task.id),
            )
        logger.warning(
            "outbox_task_retry_scheduled",
            task_id=task.id,
            run_id=task.run_id,
            attempts=attempts,
            delay_seconds=round(delay, 3),
            error=message,
        )
        return False

    def release_successor(self, task: OutboxTask, now: datetime | None = None) -> str | None:
        """Make the next parked task of ``task``'s run due, carrying its seeds forward."""
        now = now or utc_now()
        row = self.query_one(
            f"""
            SELECT id FROM {OUTBOX_TABLE}
            WHERE run_id = ? AND status = 'pending' AND next_run_at = ?
              AND run_completed_steps_before = ?
            ORDER BY created_at, rowid
            LIMIT 1
            """,
            (task.run_id, to_db(FAR_FUTURE), task.run_completed_steps_before + task.step_count),
        )
        if row is None:
            return None
        # the predecessor may have absorbed seeds from merged runs
        current = self.get(task.id) or task
        self.execute(
            f"""
            UPDATE {OUTBOX_TABLE}
            SET next_run_at = ?, seed_record_ids = ?, seed_groups = ?, origin_run_ids = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                to_db(now),
                json.dumps(current.seed_record_ids),
                json.dumps(current.seed_groups if isinstance(current.seed_groups, list) else []),
                json.dumps(current.origin_run_ids),
                to_db(now),
                row["id"],
            ),
        )
        logger.debug("outbox_successor_released", task_id=row["id"], predecessor_id=task.id, run_id=task.run_id)
        return row["id"]

    def _dead_letter(
        self,
        row: dict[str, Any],
        *,
        attempts: int,
        last_error: str | None,
        trace: str | None,
        now: datetime,
    ) -> None:
        data = dict(row)
        data.update(
            status=TaskStatus.FAILED.value,
            attempts=attempts,
            last_error=last_error,
            locked_by=None,
            locked_at=None,
            updated_at=to_db(now),
            trace_data=trace,
            failed_at=to_db(now),
        )
        self.insert(DEAD_LETTER_TABLE, data)
        self.execute(f"DELETE FROM {OUTBOX_TABLE} WHERE id = ?", (row["id"],))
        logger.error(
            "outbox_task_dead_lettered",
            task_id=row["id"],
            run_id=row["run_id"],
            attempts=attempts,
            error=last_error,
        )

    def _dead_letter_successors(self, row: dict[str, Any], now: datetime) -> None:
        parked = self.query(
            f"""
            SELECT * FROM {OUTBOX_TABLE}
            WHERE run_id = ? AND status = 'pending' AND next_run_at = ?
              AND run_completed_steps_before > ?
            ORDER BY run_completed_steps_before
            """,
            (row["run_id"], to_db(FAR_FUTURE), row["run_completed_steps_before"]),
        )
        for successor in parked:
            self._dead_letter(
                successor,
                attempts=successor["attempts"],
                last_error=f"Predecessor task {row['id']} was dead-lettered",
                trace=None,
                now=now,
            )

    # ------------------------------------------------------------------ #
    # Inspection
    # ------------------------------------------------------------------ #

    def get(self, task_id: str) -> OutboxTask | None:
        row = self.query_one(f"SELECT * FROM {OUTBOX_TABLE} WHERE id = ?", (task_id,))
        return row_to_task(row) if row is not None else None

    def list(
        self,
        status: TaskStatus | str | None = None,
        run_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[OutboxTask]:
        query = f"SELECT * FROM {OUTBOX_TABLE} WHERE 1=1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(TaskStatus(status).value)
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(run_id)
        query += " ORDER BY created_at, rowid LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [row_to_task(r) for r in self.query(query, params)]

    def run_progress(self, run_id: str) -> RunProgress:
        """Steps completed for a run: the inline part plus every done task.

        Raises:
            NotFoundError: no task or dead letter belongs to the run
        """
        in_run = (
            "(run_id = ? OR EXISTS (SELECT 1 FROM json_each("
            "CASE WHEN json_valid(origin_run_ids) THEN origin_run_ids ELSE '[]' END"
            ") WHERE value = ?))"
        )
        tasks = [row_to_task(r) for r in self.query(f"SELECT * FROM {OUTBOX_TABLE} WHERE {in_run}", (run_id, run_id))]
        dead = self.query(
            f"SELECT run_total_steps, run_completed_steps_before FROM {DEAD_LETTER_TABLE} WHERE {in_run}",
            (run_id, run_id),
        )
        if not tasks and not dead:
            raise NotFoundError(f"Run not found: {run_id}").with_context(run_id=run_id)

        offsets = [t.run_completed_steps_before for t in tasks] + [r["run_completed_steps_before"] for r in dead]
        totals = [t.run_total_steps for t in tasks] + [r["run_total_steps"] for r in dead]
        done = [t for t in tasks if t.status is TaskStatus.DONE]
        return RunProgress(
            run_id=run_id,
            total_steps=max(totals),
            completed_steps=min(offsets) + sum(t.step_count for t in done),
            pending_tasks=sum(1 for t in tasks if t.status is TaskStatus.PENDING),
            processing_tasks=sum(1 for t in tasks if t.status is TaskStatus.PROCESSING),
            done_tasks=len(done),
            dead_letters=len(dead),
        )

    def stats(self) -> dict[str, int]:
        """Task counts by state, including parked tasks and dead letters."""
        counts = {status.value: 0 for status in (TaskStatus.PENDING, TaskStatus.PROCESSING, TaskStatus.DONE)}
        for row in self.query(f"SELECT status, COUNT(*) AS n FROM {OUTBOX_TABLE} GROUP BY status"):
            counts[row["status"]] = row["n"]
        parked = self.query_one(
            f"SELECT COUNT(*) AS n FROM {OUTBOX_TABLE} WHERE status = 'pending' AND next_run_at = ?",
            (to_db(FAR_FUTURE),),
        )["n"]
        counts["pending"] -= parked
        counts["parked"] = parked
        counts["dead_letter"] = self.query_one(f"SELECT COUNT(*) AS n FROM {DEAD_LETTER_TABLE}")["n"]
        return counts

    def purge_done(self, older_than: timedelta | None = None, now: datetime | None = None) -> int:
        """Delete done tasks last updated before ``now - older_than``."""
        if older_than is None:
            older_than = timedelta(days=self._settings.outbox_done_retention_days)
        cutoff = (now or utc_now()) - older_than
        with self.transaction():
            cursor = self.execute(
                f"DELETE FROM {OUTBOX_TABLE} WHERE status = 'done' AND updated_at < ?",
                (to_db(cutoff),),
            )
        logger.info("outbox_done_purged", count=cursor.rowcount, cutoff=to_db(cutoff))
        return cursor.rowcount
