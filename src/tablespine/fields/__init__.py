"""Field kinds and the normalizer that resolves them from raw definitions."""

from tablespine.fields.models import (
    COMPUTED_KINDS,
    Condition,
    ConditionalLookupKind,
    ConditionalRollupKind,
    FieldDescriptor,
    FieldKind,
    FieldKindName,
    FormulaKind,
    LinkKind,
    LookupKind,
    PlainKind,
    Relationship,
    RollupKind,
)
from tablespine.fields.normalizer import (
    classify,
    condition_field_ids,
    dependencies,
    extract_field_references,
    normalize,
    normalize_all,
)

__all__ = [
    "COMPUTED_KINDS",
    "Condition",
    "ConditionalLookupKind",
    "ConditionalRollupKind",
    "FieldDescriptor",
    "FieldKind",
    "FieldKindName",
    "FormulaKind",
    "LinkKind",
    "LookupKind",
    "PlainKind",
    "Relationship",
    "RollupKind",
    "classify",
    "condition_field_ids",
    "dependencies",
    "extract_field_references",
    "normalize",
    "normalize_all",
]
