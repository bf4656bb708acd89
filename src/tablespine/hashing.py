"""
Deterministic hashing for plan deduplication.

Manifesto:
    Two cascades that would recompute the same fields over the same tables are
    functionally identical while pending. The plan hash identifies them:
    - **Deterministic:** Same plan always produces the same hash
    - **Order-insensitive where order is not meaningful:** field ids inside a
      step and dict keys are sorted before hashing
    - **Order-sensitive where it is:** steps keep level order

Examples:
    >>> compute_hash("a", "b") == compute_hash("a", "b")
    True
    >>> compute_plan_hash("update", "tblA", [{"level": 0, "field_ids": ["f2", "f1"]}]) == \\
    ...     compute_plan_hash("update", "tblA", [{"field_ids": ["f1", "f2"], "level": 0}])
    True

Tags:
    hashing, deduplication, idempotency, outbox, tablespine
"""

import hashlib
import json
from typing import Any


def compute_hash(*values: Any, length: int = 32) -> str:
    """
    Compute deterministic hash from values.

    Concatenates string representations with ``|`` and hashes with SHA-256.

    Args:
        *values: Values to hash (converted to strings)
        length: Hex digest length (default 32 = 128 bits)

    Returns:
        Hex string of specified length
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode()).hexdigest()[:length]


def _canonical_step(step: dict[str, Any]) -> dict[str, Any]:
    canonical = dict(step)
    field_ids = list(canonical.get("field_ids") or [])
    operations = list(canonical.get("operations") or [])
    if "operations" in canonical and len(operations) == len(field_ids):
        # operations pair positionally with field_ids
        pairs = sorted(zip(field_ids, operations))
        canonical["field_ids"] = [field_id for field_id, _ in pairs]
        canonical["operations"] = [operation for _, operation in pairs]
    elif "field_ids" in canonical:
        canonical["field_ids"] = sorted(field_ids)
    return canonical


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_plan_hash(
    change_type: str,
    seed_table_id: str,
    steps: list[dict[str, Any]],
    length: int = 64,
) -> str:
    """Content hash of a recomputation plan.

    Steps are sorted by ``(level, table_id)`` and their field ids sorted along
    with the paired operations, so two plans that only differ in how they
    listed the same work hash equally.
    """
    ordered = sorted(
        (_canonical_step(s) for s in steps),
        key=lambda s: (s.get("level", 0), s.get("table_id", ""), s.get("field_ids", [])),
    )
    return compute_hash(change_type, seed_table_id, canonical_json(ordered), length=length)
