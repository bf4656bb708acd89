"""Record storage, view ordering and computed value execution."""

from tablespine.records.evaluator import FormulaError, FormulaEvaluator, RecordEvaluator
from tablespine.records.ordering import RecordOrderCalculator, order_column_name
from tablespine.records.store import LinkChange, RecordStore, normalize_link_value
from tablespine.records.updater import ComputedUpdater, UpdateResult

__all__ = [
    "ComputedUpdater",
    "FormulaError",
    "FormulaEvaluator",
    "LinkChange",
    "RecordEvaluator",
    "RecordOrderCalculator",
    "RecordStore",
    "UpdateResult",
    "normalize_link_value",
    "order_column_name",
]
