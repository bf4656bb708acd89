"""
Record Order Calculator — fractional per-view row positions.

Manifesto:
    Inserting or pasting rows between two others must not renumber the whole
    view. Each view keeps a REAL sort key per record; new records get keys
    spaced evenly in the gap next to an anchor. When the gap is too small to
    split at floating-point precision, the view is renumbered to 1..n and the
    allocation is retried.

Architecture:
    ::

        calculate_orders(table, view, anchor, position, count)
              │
              ├─ ensure_order_column()   ALTER + backfill from __auto_number
              │                          + index (idempotent, concurrent-safe)
              ├─ anchor key ─ NotFoundError if the anchor is missing
              ├─ neighbour key on the requested side, or anchor ± 1 at an edge
              ├─ gap = |anchor - neighbour| / (count + 1)
              │
              ├─ gap too small / keys collide ──► rebalance() ──► retry
              └─ otherwise return count ascending keys inside the gap

Guardrails:
    - Reads and computation have no side effects; only the column creation
      and a rebalance write.
    - Rebalance keeps the relative order of existing records (ties broken by
      insertion order).
    - Retries are bounded by ``order_max_rebalance_attempts``.

Examples:
    >>> calc = RecordOrderCalculator(store)
    >>> calc.calculate_orders("tblA", "viwA", "recAnchor", "after", 3)
    [1.25, 1.5, 1.75]

Tags:
    ordering, fractional-indexing, rebalance, views, tablespine
"""

from __future__ import annotations

import sqlite3
import sys

from tablespine.enums import OrderPosition
from tablespine.errors import (
    OrderCalculationError,
    RecordNotFoundError,
    TableSpineError,
    ValidationError,
)
from tablespine.ids import is_safe_identifier
from tablespine.logging import get_logger
from tablespine.records.store import ORDER_COLUMN_PREFIX, RecordStore
from tablespine.settings import TableSpineSettings, get_settings

logger = get_logger(__name__)

MIN_GAP = 2 * sys.float_info.epsilon


def order_column_name(view_id: str) -> str:
    """Deterministic column name for a view's order keys."""
    if not is_safe_identifier(view_id):
        raise ValidationError(f"Invalid view id: {view_id!r}")
    return f"{ORDER_COLUMN_PREFIX}{view_id}"


class RecordOrderCalculator:
    """Allocates order keys for records of one view."""

    def __init__(self, store: RecordStore, settings: TableSpineSettings | None = None):
        self._store = store
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------ #
    # Column management
    # ------------------------------------------------------------------ #

    def ensure_order_column(self, table_id: str, view_id: str) -> str:
        """Create, backfill and index the view's order column. Safe to repeat."""
        column = order_column_name(view_id)
        name = self._store.db_table(table_id)
        if column not in self._store.columns(table_id):
            try:
                self._store.execute(f"ALTER TABLE {name} ADD COLUMN {column} REAL")
                logger.info("order_column_created", table_id=table_id, view_id=view_id, column=column)
            except sqlite3.OperationalError as exc:
                # another writer added it first
                if "duplicate column" not in str(exc).lower():
                    raise
        self._store.execute(f"UPDATE {name} SET {column} = __auto_number WHERE {column} IS NULL")
        self._store.execute(f"CREATE INDEX IF NOT EXISTS idx_{name}_{column} ON {name} ({column})")
        return column

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get_order(self, table_id: str, view_id: str, record_id: str) -> float:
        column = self.ensure_order_column(table_id, view_id)
        name = self._store.db_table(table_id)
        row = self._store.query_one(f"SELECT {column} AS k FROM {name} WHERE __id = ?", (record_id,))
        if row is None:
            raise RecordNotFoundError(table_id, record_id)
        return row["k"]

    def ordered_ids(self, table_id: str, view_id: str) -> list[str]:
        """Record ids in view order."""
        column = self.ensure_order_column(table_id, view_id)
        name = self._store.db_table(table_id)
        rows = self._store.query(f"SELECT __id FROM {name} ORDER BY {column}, __auto_number")
        return [r["__id"] for r in rows]

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def set_orders(self, table_id: str, view_id: str, keys: dict[str, float]) -> None:
        column = self.ensure_order_column(table_id, view_id)
        name = self._store.db_table(table_id)
        self._store.execute_many(
            f"UPDATE {name} SET {column} = ? WHERE __id = ?",
            [(key, record_id) for record_id, key in keys.items()],
        )

    def rebalance(self, table_id: str, view_id: str) -> int:
        """Renumber the view to 1..n in current order. Returns rows touched."""
        column = self.ensure_order_column(table_id, view_id)
        name = self._store.db_table(table_id)
        cursor = self._store.execute(
            f"""
            UPDATE {name} SET {column} = ranked.rn
            FROM (
                SELECT __auto_number AS an,
                       ROW_NUMBER() OVER (ORDER BY {column}, __auto_number) AS rn
                FROM {name}
            ) AS ranked
            WHERE {name}.__auto_number = ranked.an
            """
        )
        logger.info("order_column_rebalanced", table_id=table_id, view_id=view_id, rows=cursor.rowcount)
        return cursor.rowcount

    # ------------------------------------------------------------------ #
    # Allocation
    # ------------------------------------------------------------------ #

    def calculate_orders(
        self,
        table_id: str,
        view_id: str,
        anchor_id: str,
        position: OrderPosition | str,
        count: int,
    ) -> list[float]:
        """Return ``count`` ascending keys adjacent to ``anchor_id``.

        Raises:
            NotFoundError: the anchor record (or table) does not exist
            ValidationError: bad view id, position or count
            OrderCalculationError: any other failure
        """
        try:
            position = OrderPosition(position)
        except ValueError:
            raise ValidationError(f"Invalid position: {position!r}") from None
        if count < 1:
            raise ValidationError(f"count must be >= 1, got {count}")

        try:
            return self._calculate(table_id, view_id, anchor_id, position, count, attempt=0)
        except TableSpineError:
            raise
        except Exception as exc:
            raise OrderCalculationError(
                f"Failed to calculate orders for view {view_id}", cause=exc
            ).with_context(table_id=table_id, view_id=view_id, record_id=anchor_id) from exc

    def _calculate(
        self,
        table_id: str,
        view_id: str,
        anchor_id: str,
        position: OrderPosition,
        count: int,
        attempt: int,
    ) -> list[float]:
        column = self.ensure_order_column(table_id, view_id)
        name = self._store.db_table(table_id)

        row = self._store.query_one(f"SELECT {column} AS k FROM {name} WHERE __id = ?", (anchor_id,))
        if row is None:
            raise RecordNotFoundError(table_id, anchor_id)
        anchor = row["k"]

        duplicate = self._store.query_one(
            f"SELECT 1 AS d FROM {name} WHERE {column} = ? AND __id <> ? LIMIT 1",
            (anchor, anchor_id),
        )

        if position is OrderPosition.AFTER:
            row = self._store.query_one(f"SELECT MIN({column}) AS k FROM {name} WHERE {column} > ?", (anchor,))
            neighbour = row["k"] if row["k"] is not None else anchor + 1
            low, high = anchor, neighbour
        else:
            row = self._store.query_one(f"SELECT MAX({column}) AS k FROM {name} WHERE {column} < ?", (anchor,))
            neighbour = row["k"] if row["k"] is not None else anchor - 1
            low, high = neighbour, anchor

        gap = abs(high - low) / (count + 1)
        keys = [low + gap * i for i in range(1, count + 1)]
        if duplicate is None and gap >= MIN_GAP and self._strictly_inside(keys, low, high):
            return keys

        if attempt + 1 >= self._settings.order_max_rebalance_attempts:
            raise OrderCalculationError(
                f"Order keys still collide after {attempt + 1} rebalance attempts"
            ).with_context(table_id=table_id, view_id=view_id, record_id=anchor_id)

        logger.debug(
            "order_gap_exhausted",
            table_id=table_id,
            view_id=view_id,
            anchor=anchor,
            neighbour=neighbour,
            attempt=attempt,
        )
        self.rebalance(table_id, view_id)
        return self._calculate(table_id, view_id, anchor_id, position, count, attempt + 1)

    @staticmethod
    def _strictly_inside(keys: list[float], low: float, high: float) -> bool:
        previous = low
        for key in keys:
            if not previous < key:
                return False
            previous = key
        return previous < high
