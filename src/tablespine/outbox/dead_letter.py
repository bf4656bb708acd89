"""Dead-letter store — inspect, requeue and purge failed recomputation tasks.

WHY
───
A cascade that keeps failing must not disappear silently, and must not block
the queue either. Tasks that exhaust their attempts (or fail with a
non-retryable error) are moved here with their full plan, lineage, last
error and trace, so operators can look at them and requeue them once the
cause is fixed.

ARCHITECTURE
────────────
::

    DeadLetterStore(conn)
      ├── .list(run_id, limit)      ─ newest first
      ├── .get(entry_id)            ─ one entry or None
      ├── .count(run_id)
      ├── .requeue(entry_id)        ─ new pending task, attempts reset
      └── .purge(older_than)        ─ delete old entries

    Entries are written by ComputedUpdateOutbox.mark_failed() / claim().

Example::

    dlq = DeadLetterStore(conn)
    for entry in dlq.list(limit=10):
        print(entry.id, entry.last_error)
    dlq.requeue(entry.id)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from tablespine.enums import TaskStatus
from tablespine.errors import NotFoundError
from tablespine.ids import TASK_PREFIX, generate_id
from tablespine.logging import get_logger
from tablespine.outbox.models import DeadLetterEntry, row_to_dead_letter
from tablespine.outbox.queue import DEAD_LETTER_TABLE, OUTBOX_TABLE
from tablespine.repository import BaseRepository
from tablespine.timestamps import FAR_FUTURE, to_db, utc_now

logger = get_logger(__name__)


class DeadLetterStore(BaseRepository):
    """Read and manage ``computed_update_dead_letter``."""

    def list(self, run_id: str | None = None, limit: int = 100, offset: int = 0) -> list[DeadLetterEntry]:
        """List entries, newest failure first.

        Args:
            run_id: Filter by run
            limit: Max results
            offset: Rows to skip
        """
        query = f"SELECT * FROM {DEAD_LETTER_TABLE} WHERE 1=1"
        params: list[Any] = []
        if run_id:
            query += " AND run_id = ?"
            params.append(run_id)
        query += " ORDER BY failed_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [row_to_dead_letter(row) for row in self.query(query, params)]

    def get(self, entry_id: str) -> DeadLetterEntry | None:
        row = self.query_one(f"SELECT * FROM {DEAD_LETTER_TABLE} WHERE id = ?", (entry_id,))
        return row_to_dead_letter(row) if row is not None else None

    def count(self, run_id: str | None = None) -> int:
        if run_id:
            row = self.query_one(f"SELECT COUNT(*) AS n FROM {DEAD_LETTER_TABLE} WHERE run_id = ?", (run_id,))
        else:
            row = self.query_one(f"SELECT COUNT(*) AS n FROM {DEAD_LETTER_TABLE}")
        return row["n"]

    def requeue(self, entry_id: str, now: datetime | None = None) -> str:
        """Move an entry back to the outbox as a fresh pending task.

        Returns:
            The new task id

        Raises:
            NotFoundError: no such entry
        """
        now = now or utc_now()
        stamp = to_db(now)
        with self.transaction():
            row = self.query_one(f"SELECT * FROM {DEAD_LETTER_TABLE} WHERE id = ?", (entry_id,))
            if row is None:
                raise NotFoundError(f"Dead letter not found: {entry_id}").with_context(task_id=entry_id)
            data = {k: v for k, v in row.items() if k not in ("trace_data", "failed_at")}
            task_id = generate_id(TASK_PREFIX)
            parked = self._has_unfinished_predecessor(row)
            data.update(
                id=task_id,
                status=TaskStatus.PENDING.value,
                attempts=0,
                next_run_at=to_db(FAR_FUTURE) if parked else stamp,
                locked_at=None,
                locked_by=None,
                last_error=None,
                created_at=stamp,
                updated_at=stamp,
            )
            self.insert(OUTBOX_TABLE, data)
            self.execute(f"DELETE FROM {DEAD_LETTER_TABLE} WHERE id = ?", (entry_id,))
        logger.info("dead_letter_requeued", entry_id=entry_id, task_id=task_id, run_id=row["run_id"], parked=parked)
        return task_id

    def _has_unfinished_predecessor(self, row: dict[str, Any]) -> bool:
        """An earlier chunk of the same run is still queued or dead-lettered."""
        params = (row["run_id"], row["run_completed_steps_before"])
        queued = self.query_one(
            f"SELECT 1 AS found FROM {OUTBOX_TABLE} WHERE run_id = ? "
            f"AND status IN ('pending', 'processing') AND run_completed_steps_before < ? LIMIT 1",
            params,
        )
        if queued is not None:
            return True
        failed = self.query_one(
            f"SELECT 1 AS found FROM {DEAD_LETTER_TABLE} WHERE run_id = ? "
            f"AND run_completed_steps_before < ? AND id <> ? LIMIT 1",
            (*params, row["id"]),
        )
        return failed is not None

    def purge(self, older_than: timedelta | None = None, now: datetime | None = None) -> int:
        """Delete entries that failed before ``now - older_than`` (all entries when None)."""
        with self.transaction():
            if older_than is None:
                cursor = self.execute(f"DELETE FROM {DEAD_LETTER_TABLE}")
            else:
                cutoff = (now or utc_now()) - older_than
                cursor = self.execute(f"DELETE FROM {DEAD_LETTER_TABLE} WHERE failed_at < ?", (to_db(cutoff),))
        logger.info("dead_letters_purged", count=cursor.rowcount)
        return cursor.rowcount
