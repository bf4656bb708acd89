"""
Field Normalizer — classify raw field definitions into a ``FieldKind``.

Raw definitions arrive as camelCase dicts, possibly from an older schema
generation. Classification never fails: a definition whose configuration is
incomplete, or references fields that do not exist, degrades to a plain
``singleLineText`` field and the reason is logged.

Classification order:
    1. conditional lookup (``isConditionalLookup`` or type ``conditionalLookup``),
       checked first because legacy rows carry the resolved value type
    2. lookup (``isLookup``)
    3. link
    4. rollup
    5. conditional rollup
    6. formula (demoted when it references a rollup or conditional rollup)
    7. anything else is plain

Examples:
    >>> normalize({"id": "fldA", "tableId": "tblA", "type": "number"}, {}).kind_name
    <FieldKindName.PLAIN: 'plain'>

Tags:
    normalizer, field-kind, classification, tablespine
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

from tablespine.fields.models import (
    AGGREGATE_KINDS,
    PLAIN_VALUE_TYPE,
    Condition,
    ConditionalLookupKind,
    ConditionalRollupKind,
    FieldDescriptor,
    FieldKindName,
    FormulaKind,
    LinkKind,
    LookupKind,
    PlainKind,
    Relationship,
    RollupKind,
)
from tablespine.logging import get_logger

logger = get_logger(__name__)

FIELD_ID_PATTERN = re.compile(r"(?<![A-Za-z0-9])fld[A-Za-z0-9]{16}(?![A-Za-z0-9])")

DEFAULT_ROLLUP_EXPRESSION = "countall({values})"

ROLLUP_FUNCTIONS = frozenset(
    {
        "countall",
        "counta",
        "count",
        "sum",
        "max",
        "min",
        "average",
        "and",
        "or",
        "xor",
        "concatenate",
        "array_join",
        "array_unique",
        "array_compact",
    }
)

_ROLLUP_EXPRESSION = re.compile(r"^\s*([a-z_]+)\(\s*\{values\}\s*\)\s*$")


def extract_field_references(expression: str | None) -> list[str]:
    """Field ids referenced by a formula expression, deduplicated in discovery order."""
    if not expression:
        return []
    seen: dict[str, None] = {}
    for match in FIELD_ID_PATTERN.finditer(expression):
        seen.setdefault(match.group(0), None)
    return list(seen)


def rollup_function(expression: str) -> str | None:
    """``"sum({values})"`` -> ``"sum"``; None when not a supported aggregation."""
    match = _ROLLUP_EXPRESSION.match(expression or "")
    if match is None or match.group(1) not in ROLLUP_FUNCTIONS:
        return None
    return match.group(1)


def has_filter_clause(filter_: Any) -> bool:
    """True when a filter set contains at least one clause at any depth."""
    stack = [filter_]
    while stack:
        node = stack.pop()
        if not isinstance(node, dict):
            continue
        if node.get("fieldId"):
            return True
        children = node.get("filterSet")
        if isinstance(children, list):
            stack.extend(children)
    return False


def condition_field_ids(filter_: Any) -> list[str]:
    """Field ids a filter reads, in discovery order. Walks nested sets iteratively."""
    found: dict[str, None] = {}
    stack = [filter_]
    while stack:
        node = stack.pop()
        if not isinstance(node, dict):
            continue
        field_id = node.get("fieldId")
        if field_id:
            found.setdefault(field_id, None)
        # reversed so that pop() walks clauses left to right
        children = node.get("filterSet")
        if isinstance(children, list):
            stack.extend(reversed(children))
    return list(found)


def dependencies(descriptor: FieldDescriptor) -> list[str]:
    """Upstream field ids whose values this field is computed from."""
    kind = descriptor.kind
    if isinstance(kind, FormulaKind):
        return list(kind.references)
    if isinstance(kind, (LookupKind, RollupKind)):
        return [kind.link_field_id, kind.lookup_field_id]
    if isinstance(kind, (ConditionalLookupKind, ConditionalRollupKind)):
        ids: dict[str, None] = {kind.lookup_field_id: None}
        for field_id in condition_field_ids(kind.condition.filter):
            ids.setdefault(field_id, None)
        sort_field = (kind.condition.sort or {}).get("fieldId")
        if sort_field:
            ids.setdefault(sort_field, None)
        return list(ids)
    return []


class _Demote(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _require(value: Any, reason: str) -> Any:
    if value in (None, "", [], {}):
        raise _Demote(reason)
    return value


def _require_known(field_id: Any, known: Mapping[str, str], what: str) -> str:
    if not isinstance(field_id, str):
        raise _Demote(f"{what} id must be a string, got {type(field_id).__name__}")
    if field_id not in known:
        raise _Demote(f"{what} {field_id} does not exist")
    return field_id


def _mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not value:
        return {}
    if not isinstance(value, Mapping):
        raise _Demote(f"{what} must be an object, got {type(value).__name__}")
    return value


def _string(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise _Demote(f"{what} must be a string, got {type(value).__name__}")
    return value


def _condition(options: Mapping[str, Any]) -> Condition:
    filter_ = options.get("filter")
    if not has_filter_clause(filter_):
        raise _Demote("condition requires a filter with at least one clause")
    limit = options.get("limit")
    if limit is not None:
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise _Demote(f"invalid limit {limit!r}") from None
        if limit <= 0:
            raise _Demote(f"invalid limit {limit!r}")
    sort = dict(_mapping(options.get("sort"), "sort")) or None
    if sort is not None and not (sort.get("fieldId") and isinstance(sort["fieldId"], str)):
        sort = None
    return Condition(filter=dict(filter_), sort=sort, limit=limit)


def _conditional_options(raw: Mapping[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    merged.update(_mapping(raw.get("options"), "options"))
    merged.update(_mapping(raw.get("lookupOptions"), "lookupOptions"))
    return merged


def _classify_conditional_lookup(raw, known):
    options = _conditional_options(raw)
    foreign_table_id = _require(options.get("foreignTableId"), "conditional lookup requires foreignTableId")
    lookup_field_id = _require(options.get("lookupFieldId"), "conditional lookup requires lookupFieldId")
    _require_known(lookup_field_id, known, "lookup field")
    return ConditionalLookupKind(
        foreign_table_id=foreign_table_id,
        lookup_field_id=lookup_field_id,
        condition=_condition(options),
    )


def _lookup_triple(raw, known, what: str) -> tuple[str, str, str]:
    options = _mapping(raw.get("lookupOptions"), "lookupOptions")
    foreign_table_id = _require(options.get("foreignTableId"), f"{what} requires foreignTableId")
    link_field_id = _require(options.get("linkFieldId"), f"{what} requires linkFieldId")
    lookup_field_id = _require(options.get("lookupFieldId"), f"{what} requires lookupFieldId")
    _require_known(link_field_id, known, "link field")
    if known[link_field_id] != FieldKindName.LINK.value:
        raise _Demote(f"{link_field_id} is not a link field")
    _require_known(lookup_field_id, known, "lookup field")
    return foreign_table_id, link_field_id, lookup_field_id


def _classify_lookup(raw, known):
    foreign_table_id, link_field_id, lookup_field_id = _lookup_triple(raw, known, "lookup")
    return LookupKind(
        foreign_table_id=foreign_table_id,
        link_field_id=link_field_id,
        lookup_field_id=lookup_field_id,
    )


def _classify_link(raw, known):
    options = _mapping(raw.get("options"), "options")
    relationship = _require(options.get("relationship"), "link requires relationship")
    try:
        relationship = Relationship(relationship)
    except ValueError:
        raise _Demote(f"unknown relationship {relationship!r}") from None
    return LinkKind(
        relationship=relationship,
        foreign_table_id=_require(options.get("foreignTableId"), "link requires foreignTableId"),
        lookup_field_id=_require(options.get("lookupFieldId"), "link requires lookupFieldId"),
        symmetric_field_id=options.get("symmetricFieldId") or None,
        is_one_way=bool(options.get("isOneWay", False)),
    )


def _expression(options: Mapping[str, Any]) -> str:
    expression = _string(options.get("expression") or DEFAULT_ROLLUP_EXPRESSION, "rollup expression")
    if rollup_function(expression) is None:
        raise _Demote(f"unsupported rollup expression {expression!r}")
    return expression


def _classify_rollup(raw, known):
    foreign_table_id, link_field_id, lookup_field_id = _lookup_triple(raw, known, "rollup")
    return RollupKind(
        foreign_table_id=foreign_table_id,
        link_field_id=link_field_id,
        lookup_field_id=lookup_field_id,
        expression=_expression(_mapping(raw.get("options"), "options")),
    )


def _classify_conditional_rollup(raw, known):
    options = _conditional_options(raw)
    foreign_table_id = _require(options.get("foreignTableId"), "conditional rollup requires foreignTableId")
    lookup_field_id = _require(options.get("lookupFieldId"), "conditional rollup requires lookupFieldId")
    _require_known(lookup_field_id, known, "lookup field")
    return ConditionalRollupKind(
        foreign_table_id=foreign_table_id,
        lookup_field_id=lookup_field_id,
        condition=_condition(options),
        expression=_expression(options),
    )


def _classify_formula(raw, known):
    options = _mapping(raw.get("options"), "options")
    expression = _string(_require(options.get("expression"), "formula requires expression"), "formula expression")
    references = extract_field_references(expression)
    for ref in references:
        if ref == raw.get("id"):
            continue
        _require_known(ref, known, "referenced field")
        if known[ref] in {k.value for k in AGGREGATE_KINDS}:
            raise _Demote(f"formula references aggregate field {ref}")
    return FormulaKind(expression=expression, references=tuple(references))


def classify(
    raw: Mapping[str, Any],
    field_types_by_id: Mapping[str, str],
) -> tuple[FieldDescriptor, str | None]:
    """Classify *raw*; returns the descriptor and the demotion reason, if any.

    ``field_types_by_id`` maps every field id known at classification time to
    its kind name (``"link"``, ``"rollup"``, ``"plain"``, ...).
    """
    raw_type = raw.get("type") or PLAIN_VALUE_TYPE
    try:
        if raw.get("isConditionalLookup") or raw_type == FieldKindName.CONDITIONAL_LOOKUP.value:
            kind = _classify_conditional_lookup(raw, field_types_by_id)
        elif raw.get("isLookup"):
            kind = _classify_lookup(raw, field_types_by_id)
        elif raw_type == FieldKindName.LINK.value:
            kind = _classify_link(raw, field_types_by_id)
        elif raw_type == FieldKindName.ROLLUP.value:
            kind = _classify_rollup(raw, field_types_by_id)
        elif raw_type == FieldKindName.CONDITIONAL_ROLLUP.value:
            kind = _classify_conditional_rollup(raw, field_types_by_id)
        elif raw_type == FieldKindName.FORMULA.value:
            kind = _classify_formula(raw, field_types_by_id)
        else:
            kind = PlainKind()
    except _Demote as demotion:
        descriptor = FieldDescriptor(
            id=raw["id"],
            table_id=raw["tableId"],
            name=raw.get("name") or raw["id"],
            kind=PlainKind(),
            value_type=PLAIN_VALUE_TYPE,
        )
        return descriptor, demotion.reason

    descriptor = FieldDescriptor(
        id=raw["id"],
        table_id=raw["tableId"],
        name=raw.get("name") or raw["id"],
        kind=kind,
        value_type=raw_type,
    )
    return descriptor, None


def normalize(raw: Mapping[str, Any], field_types_by_id: Mapping[str, str]) -> FieldDescriptor:
    """Classify a raw field definition. Never raises on bad configuration."""
    descriptor, reason = classify(raw, field_types_by_id)
    if reason is not None:
        logger.info(
            "field_demoted_to_plain",
            field_id=descriptor.id,
            table_id=descriptor.table_id,
            raw_type=raw.get("type"),
            reason=reason,
        )
    return descriptor


def normalize_all(
    raws: Iterable[Mapping[str, Any]],
    field_types_by_id: Mapping[str, str] | None = None,
) -> list[FieldDescriptor]:
    """Normalize a batch, making earlier fields of the batch visible to later ones."""
    known = dict(field_types_by_id or {})
    result = []
    for raw in raws:
        descriptor = normalize(raw, known)
        known[descriptor.id] = descriptor.kind_name.value
        result.append(descriptor)
    return result
