"""Outbox worker — claims computed-update tasks and executes their steps.

:class:`ComputedUpdateWorker` processes one batch at a time against a single
connection. :class:`WorkerLoop` polls on a schedule, optionally from several
threads, each with its own connection (SQLite serializes the writers; the
claim is the only contended statement).

Usage (programmatic)::

    from tablespine.outbox.worker import WorkerLoop

    loop = WorkerLoop(database_url="sqlite:///tablespine.db", threads=2)
    loop.start()  # blocking, runs until SIGINT/SIGTERM

Usage (CLI)::

    tablespine worker start --threads 2 --poll-interval 2
"""

from __future__ import annotations

import os
import platform
import signal
import threading
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from tablespine.catalog import FieldCatalog
from tablespine.connection import SqliteConnection, create_connection
from tablespine.errors import LockLostError
from tablespine.logging import LogContext, bind_context, get_logger
from tablespine.outbox.models import OutboxTask
from tablespine.outbox.queue import ComputedUpdateOutbox
from tablespine.records.store import RecordStore
from tablespine.records.updater import ComputedUpdater, UpdateResult
from tablespine.settings import TableSpineSettings, get_settings
from tablespine.timestamps import utc_now

logger = get_logger(__name__)


class TaskOutcome(str, Enum):
    DONE = "done"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"
    LOCK_LOST = "lock_lost"


@dataclass
class WorkerInfo:
    """Metadata about a running worker."""

    worker_id: str
    pid: int
    started_at: datetime
    poll_interval: float
    threads: int
    status: str = "running"
    hostname: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "pid": self.pid,
            "started_at": self.started_at.isoformat(),
            "poll_interval": self.poll_interval,
            "threads": self.threads,
            "status": self.status,
            "hostname": self.hostname,
        }


@dataclass
class WorkerStats:
    """Aggregate statistics for a worker."""

    total_processed: int = 0
    total_completed: int = 0
    total_retried: int = 0
    total_dead_lettered: int = 0
    total_lock_lost: int = 0
    uptime_seconds: float = 0
    last_poll_at: datetime | None = None

    def record(self, outcome: TaskOutcome) -> None:
        self.total_processed += 1
        if outcome is TaskOutcome.DONE:
            self.total_completed += 1
        elif outcome is TaskOutcome.RETRY:
            self.total_retried += 1
        elif outcome is TaskOutcome.DEAD_LETTER:
            self.total_dead_lettered += 1
        else:
            self.total_lock_lost += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "total_completed": self.total_completed,
            "total_retried": self.total_retried,
            "total_dead_lettered": self.total_dead_lettered,
            "total_lock_lost": self.total_lock_lost,
            "uptime_seconds": round(self.uptime_seconds, 2),
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
        }


def _dirty_stats(result: UpdateResult) -> dict[str, Any]:
    return {
        "changed": {table_id: len(ids) for table_id, ids in result.changed.items()},
        "steps_run": result.steps_run,
        "records_evaluated": result.records_evaluated,
    }


# --------------------------------------------------------------------------- #
# Single-connection worker
# --------------------------------------------------------------------------- #


class ComputedUpdateWorker:
    """Claims and executes tasks on one connection.

    Each task runs in one transaction: its steps and the ``done`` transition
    commit together. A failure rolls the steps back and is then recorded
    separately, so the attempt count survives the rollback.
    """

    def __init__(
        self,
        conn: SqliteConnection,
        settings: TableSpineSettings | None = None,
        worker_id: str | None = None,
        updater: ComputedUpdater | None = None,
    ):
        self._conn = conn
        self._settings = settings or get_settings()
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._outbox = ComputedUpdateOutbox(conn, self._settings)
        if updater is None:
            catalog = FieldCatalog(conn)
            updater = ComputedUpdater(catalog, RecordStore(conn, catalog))
        self._updater = updater
        self.stats = WorkerStats()

    @property
    def outbox(self) -> ComputedUpdateOutbox:
        return self._outbox

    def run_once(self, now: datetime | None = None) -> int:
        """Claim a batch and execute it. Returns the number of tasks handled."""
        tasks = self._outbox.claim_batch(self.worker_id, now)
        for task in tasks:
            self.stats.record(self.execute(task))
        self.stats.last_poll_at = utc_now()
        return len(tasks)

    def drain(self, max_rounds: int = 1000) -> int:
        """Run batches until nothing is claimable (or ``max_rounds`` is hit)."""
        total = 0
        for _ in range(max_rounds):
            handled = self.run_once()
            if not handled:
                break
            total += handled
        return total

    def execute(self, task: OutboxTask) -> TaskOutcome:
        with LogContext(task_id=task.id, run_id=task.run_id, worker_id=self.worker_id):
            logger.info("outbox_task_started", attempts=task.attempts, steps=task.step_count)
            try:
                with self._conn.transaction():
                    seed_groups, steps, edges = task.decode_plan()
                    result = self._updater.run(seed_groups, steps, edges)
                    self._outbox.mark_done(task, self.worker_id, dirty_stats=_dirty_stats(result))
            except LockLostError:
                logger.warning("outbox_task_lock_lost")
                return TaskOutcome.LOCK_LOST
            except Exception as exc:
                return self._fail(task, exc)
            logger.info(
                "outbox_task_completed",
                steps_run=result.steps_run,
                records_changed=result.changed_count,
            )
            return TaskOutcome.DONE

    def _fail(self, task: OutboxTask, exc: Exception) -> TaskOutcome:
        logger.warning("outbox_task_failed", error=str(exc), error_type=type(exc).__name__)
        try:
            dead = self._outbox.mark_failed(task, self.worker_id, exc, trace=traceback.format_exc())
        except LockLostError:
            logger.warning("outbox_task_lock_lost")
            return TaskOutcome.LOCK_LOST
        return TaskOutcome.DEAD_LETTER if dead else TaskOutcome.RETRY


# --------------------------------------------------------------------------- #
# Global worker registry (for stats / health endpoints)
# --------------------------------------------------------------------------- #

_active_workers: dict[str, WorkerLoop] = {}
_workers_lock = threading.Lock()


def get_active_workers() -> list[WorkerInfo]:
    """Return info about all active worker loops (in this process)."""
    with _workers_lock:
        return [w.info for w in _active_workers.values()]


# --------------------------------------------------------------------------- #
# WorkerLoop
# --------------------------------------------------------------------------- #


class WorkerLoop:
    """Polls the outbox and executes claimed tasks until stopped."""

    def __init__(
        self,
        database_url: str | None = None,
        conn: SqliteConnection | None = None,
        settings: TableSpineSettings | None = None,
        poll_interval: float | None = None,
        threads: int | None = None,
        worker_id: str | None = None,
    ):
        """
        Args:
            database_url: Database to open, one connection per thread.
                Ignored if *conn* is provided.
            conn: Pre-existing connection; forces a single polling thread.
            settings: Defaults for poll interval, batch size and threads.
            poll_interval: Seconds between polls when the queue is empty.
            threads: Polling threads.
            worker_id: Custom worker identifier. Auto-generated if ``None``.
        """
        self._settings = settings or get_settings()
        if conn is None and not database_url:
            raise ValueError("Either database_url or conn must be provided")
        self._conn = conn
        self._database_url = database_url
        self._worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._poll_interval = poll_interval or self._settings.worker_poll_interval
        self._threads = 1 if conn is not None else (threads or self._settings.worker_threads)
        self._shutdown = threading.Event()
        self._started_at = utc_now()
        self._stats = WorkerStats()
        self._stats_lock = threading.Lock()
        self.info = WorkerInfo(
            worker_id=self._worker_id,
            pid=os.getpid(),
            started_at=self._started_at,
            poll_interval=self._poll_interval,
            threads=self._threads,
            hostname=platform.node(),
        )

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start polling (blocking). Installs signal handlers for
        graceful shutdown on SIGINT / SIGTERM.
        """
        logger.info(
            "worker_starting",
            worker_id=self._worker_id,
            poll_interval=self._poll_interval,
            threads=self._threads,
            batch_size=self._settings.worker_batch_size,
        )
        with _workers_lock:
            _active_workers[self._worker_id] = self

        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except (ValueError, OSError):
            pass  # not in main thread

        extra = [
            threading.Thread(target=self._thread_main, args=(index,), name=f"{self._worker_id}-{index}", daemon=True)
            for index in range(1, self._threads)
        ]
        try:
            for thread in extra:
                thread.start()
            self._thread_main(0)
            for thread in extra:
                thread.join()
        finally:
            self._cleanup()

    def start_background(self) -> threading.Thread:
        """Start the loop in a daemon thread. Returns the thread."""
        thread = threading.Thread(target=self.start, name=f"{self._worker_id}-loop", daemon=True)
        thread.start()
        return thread

    def stop(self) -> None:
        """Request graceful shutdown."""
        logger.info("worker_stopping", worker_id=self._worker_id)
        self._shutdown.set()
        self.info.status = "stopping"

    def get_stats(self) -> WorkerStats:
        with self._stats_lock:
            self._stats.uptime_seconds = (utc_now() - self._started_at).total_seconds()
            return self._stats

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #

    def _thread_main(self, index: int) -> None:
        bind_context(worker_loop=self._worker_id)
        owns_conn = self._conn is None
        conn = self._conn if self._conn is not None else create_connection(self._database_url)[0]
        worker = ComputedUpdateWorker(conn, self._settings, worker_id=f"{self._worker_id}-{index}")
        try:
            self._run_loop(worker)
        finally:
            if owns_conn:
                conn.close()

    def _run_loop(self, worker: ComputedUpdateWorker) -> None:
        while not self._shutdown.is_set():
            handled = 0
            before = WorkerStats(**vars(worker.stats))
            try:
                handled = worker.run_once()
            except Exception:
                logger.exception("worker_poll_error", worker_id=worker.worker_id)
            self._merge_stats(before, worker.stats)
            if not handled:
                self._shutdown.wait(self._poll_interval)

    def _merge_stats(self, before: WorkerStats, after: WorkerStats) -> None:
        with self._stats_lock:
            self._stats.total_processed += after.total_processed - before.total_processed
            self._stats.total_completed += after.total_completed - before.total_completed
            self._stats.total_retried += after.total_retried - before.total_retried
            self._stats.total_dead_lettered += after.total_dead_lettered - before.total_dead_lettered
            self._stats.total_lock_lost += after.total_lock_lost - before.total_lock_lost
            self._stats.last_poll_at = utc_now()

    def _handle_signal(self, signum, frame) -> None:
        logger.info("worker_signal_received", worker_id=self._worker_id, signal=signum)
        self.stop()

    def _cleanup(self) -> None:
        with _workers_lock:
            _active_workers.pop(self._worker_id, None)
        self.info.status = "stopped"
        logger.info("worker_stopped", worker_id=self._worker_id, **self.get_stats().to_dict())
