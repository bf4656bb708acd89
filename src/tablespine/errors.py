"""
Structured error types for the computed-field engine.

Every failure the engine can raise carries enough metadata for the outbox to
decide between retrying, dead-lettering, or returning immediately to the caller.

Manifesto:
    - **Typed hierarchy:** Not-found, validation, transient and poison errors
      are distinct classes, never string matching.
    - **Explicit retry semantics:** Each error type declares ``default_retryable``.
    - **Rich context:** ``ErrorContext`` carries table/field/task/run ids for logs.
    - **Error chaining:** The underlying exception is kept as ``cause``.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                     TableSpineError                              │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ValidationError     NotFoundError          TransientError       │
        │  (VALIDATION)        (NOT_FOUND)            (retryable=True)     │
        │                        │                                         │
        │                      TableNotFoundError                          │
        │                      FieldNotFoundError                          │
        │                      RecordNotFoundError                         │
        │                                                                  │
        │  DatabaseError       OrderCalculationError  PlanDecodeError      │
        │  (DATABASE)          (ORDERING)             (POISON)             │
        │                                                                  │
        │  LockLostError                                                   │
        │  (QUEUE, retryable=True)                                         │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> err = RecordNotFoundError("tblA", "recX")
    >>> err.retryable
    False
    >>> err.to_dict()["category"]
    'NOT_FOUND'

Tags:
    error-handling, exception-hierarchy, retry-logic, outbox, tablespine
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories used for routing and retry decisions."""

    VALIDATION = "VALIDATION"      # Bad input, computed-field writes
    NOT_FOUND = "NOT_FOUND"        # Missing table, field, record, anchor
    DATABASE = "DATABASE"          # Store failures
    TRANSIENT = "TRANSIENT"        # Busy/locked store, lost locks
    ORDERING = "ORDERING"          # Order key allocation
    POISON = "POISON"              # Task payloads that can never succeed
    QUEUE = "QUEUE"                # Outbox state transitions
    INTERNAL = "INTERNAL"          # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging."""

    table_id: str | None = None
    field_id: str | None = None
    record_id: str | None = None
    task_id: str | None = None
    run_id: str | None = None
    view_id: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["table_id", "field_id", "record_id", "task_id", "run_id", "view_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class TableSpineError(Exception):
    """
    Base exception for all engine errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers may
    override either per instance.

    Args:
        message: Human-readable description
        category: Overrides the class default category
        retryable: Overrides the class default retry flag
        context: Structured metadata
        cause: Underlying exception, also set as ``__cause__``
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> TableSpineError:
        """Add context fields and return self for chaining."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging and API responses."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION
# =============================================================================


class ValidationError(TableSpineError):
    """Invalid input: unknown view id, writes to computed fields, bad payloads."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(self, message: str, *, field_id: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        if field_id is not None:
            self.context.field_id = field_id


# =============================================================================
# NOT FOUND
# =============================================================================


class NotFoundError(TableSpineError):
    """A referenced entity does not exist. Returned immediately, never retried."""

    default_category = ErrorCategory.NOT_FOUND
    default_retryable = False


class TableNotFoundError(NotFoundError):
    def __init__(self, table_id: str):
        super().__init__(f"Table not found: {table_id}", context=ErrorContext(table_id=table_id))
        self.table_id = table_id


class FieldNotFoundError(NotFoundError):
    def __init__(self, field_id: str):
        super().__init__(f"Field not found: {field_id}", context=ErrorContext(field_id=field_id))
        self.field_id = field_id


class RecordNotFoundError(NotFoundError):
    def __init__(self, table_id: str, record_id: str):
        super().__init__(
            f"Record not found: {record_id} in table {table_id}",
            context=ErrorContext(table_id=table_id, record_id=record_id),
        )
        self.table_id = table_id
        self.record_id = record_id


# =============================================================================
# STORE / QUEUE
# =============================================================================


class TransientError(TableSpineError):
    """Temporary failure that should succeed on retry."""

    default_category = ErrorCategory.TRANSIENT
    default_retryable = True


class DatabaseError(TableSpineError):
    default_category = ErrorCategory.DATABASE
    default_retryable = False


class LockLostError(TransientError):
    """The worker no longer holds the claim it is trying to complete."""

    default_category = ErrorCategory.QUEUE

    def __init__(self, task_id: str, worker_id: str):
        super().__init__(
            f"Task {task_id} is no longer locked by {worker_id}",
            context=ErrorContext(task_id=task_id, metadata={"worker_id": worker_id}),
        )
        self.task_id = task_id
        self.worker_id = worker_id


class PlanDecodeError(TableSpineError):
    """A persisted task payload cannot be decoded. Dead-lettered without retry."""

    default_category = ErrorCategory.POISON
    default_retryable = False


# =============================================================================
# ORDERING
# =============================================================================


class OrderCalculationError(TableSpineError):
    """Generic failure while allocating order keys."""

    default_category = ErrorCategory.ORDERING
    default_retryable = False


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error should be retried by the outbox.

    Engine errors use their own flag. Store-level busy/locked errors and
    connection problems are retryable. Any other unexpected exception is
    treated as retryable so that it is retried up to ``max_attempts`` before
    reaching the dead letter store.
    """
    if isinstance(error, TableSpineError):
        return error.retryable
    if isinstance(error, (sqlite3.OperationalError, ConnectionError, TimeoutError)):
        return True
    if isinstance(error, (sqlite3.ProgrammingError, sqlite3.IntegrityError)):
        return False
    return True


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, TableSpineError):
        return error.category
    if isinstance(error, sqlite3.Error):
        return ErrorCategory.DATABASE
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.TRANSIENT
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "TableSpineError",
    "ValidationError",
    "NotFoundError",
    "TableNotFoundError",
    "FieldNotFoundError",
    "RecordNotFoundError",
    "TransientError",
    "DatabaseError",
    "LockLostError",
    "PlanDecodeError",
    "OrderCalculationError",
    "is_retryable",
    "categorize_error",
]
