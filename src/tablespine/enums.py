"""Shared enums for planning and the outbox."""

from enum import Enum


class ChangeType(str, Enum):
    """Kind of record mutation that triggered a plan."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class TaskStatus(str, Enum):
    """Lifecycle of an outbox task.

    ``failed`` is terminal and only appears on dead-letter rows; a task that
    exhausts its attempts leaves the active queue.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class Propagation(str, Enum):
    """How dirty records move across one dependency edge."""

    SAME_RECORD = "sameRecord"            # formula / link-field edges within a table
    LINK_TRAVERSAL = "linkTraversal"      # lookup / rollup through a link field
    ALL_TARGET_RECORDS = "allTargetRecords"  # conditional fields rescan the target table


class RecordScope(str, Enum):
    DIRTY = "dirty"
    ALL = "all"


class OrderPosition(str, Enum):
    BEFORE = "before"
    AFTER = "after"
