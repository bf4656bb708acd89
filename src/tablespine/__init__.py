"""
tablespine - computed-field dependency planning and incremental recomputation.

Exposes the engine facade plus the building blocks it composes:
- tablespine.fields: field kinds and the normalizer
- tablespine.graph: reference graph and dependency planner
- tablespine.records: record storage, evaluation and ordering
- tablespine.outbox: durable queue, dead letters and workers
"""

__version__ = "0.1.0"

from tablespine.engine import ComputedEngine, MutationResult  # noqa: E402
from tablespine.errors import ErrorCategory, TableSpineError  # noqa: E402
from tablespine.settings import TableSpineSettings, get_settings  # noqa: E402
from tablespine.strategy import DispatchResult, HybridUpdateStrategy  # noqa: E402

__all__ = [
    "ComputedEngine",
    "DispatchResult",
    "ErrorCategory",
    "HybridUpdateStrategy",
    "MutationResult",
    "TableSpineError",
    "TableSpineSettings",
    "__version__",
    "get_settings",
]
