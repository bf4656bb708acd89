"""Computed-update outbox: queue, dead letters, retry policy and workers."""

from tablespine.outbox.dead_letter import DeadLetterStore
from tablespine.outbox.models import DeadLetterEntry, OutboxTask, OutboxTaskInput, RunProgress
from tablespine.outbox.queue import ComputedUpdateOutbox, EnqueueResult, merge_seed_groups
from tablespine.outbox.retry import ExponentialBackoff
from tablespine.outbox.worker import ComputedUpdateWorker, TaskOutcome, WorkerLoop, get_active_workers

__all__ = [
    "ComputedUpdateOutbox",
    "ComputedUpdateWorker",
    "DeadLetterEntry",
    "DeadLetterStore",
    "EnqueueResult",
    "ExponentialBackoff",
    "OutboxTask",
    "OutboxTaskInput",
    "RunProgress",
    "TaskOutcome",
    "WorkerLoop",
    "get_active_workers",
    "merge_seed_groups",
]
