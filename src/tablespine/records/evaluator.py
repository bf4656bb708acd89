"""Value evaluation per field kind.

The engine treats formula semantics as a pluggable pure function; the
:class:`FormulaEvaluator` here covers arithmetic, comparisons, string
concatenation and a handful of spreadsheet functions over ``{fldXXX}``
references. Replace it by passing a different ``formula`` evaluator to
:class:`RecordEvaluator`.
"""

from __future__ import annotations

import ast
import math
import operator
import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

from tablespine.errors import ValidationError
from tablespine.fields.models import (
    Condition,
    ConditionalLookupKind,
    ConditionalRollupKind,
    FieldDescriptor,
    FormulaKind,
    LinkKind,
    LookupKind,
    RollupKind,
)
from tablespine.fields.normalizer import FIELD_ID_PATTERN, rollup_function
from tablespine.records.store import RecordStore


# ── Helpers ──────────────────────────────────────────────────────────────


def flatten(values: Iterable[Any]) -> list[Any]:
    """Flatten nested lists (a lookup of a lookup) and drop empty cells."""
    result: list[Any] = []
    stack = [iter(values)]
    while stack:
        try:
            item = next(stack[-1])
        except StopIteration:
            stack.pop()
            continue
        if isinstance(item, (list, tuple)):
            stack.append(iter(item))
        elif item is not None:
            result.append(item)
    return result


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _numbers(values: Iterable[Any]) -> list[float]:
    return [v for v in values if _is_number(v)]


def aggregate(function: str, values: list[Any]) -> Any:
    """Apply a rollup aggregation to flattened values."""
    numbers = _numbers(values)
    if function == "countall":
        return len(values)
    if function == "counta":
        return sum(1 for v in values if not _is_empty(v))
    if function == "count":
        return len(numbers)
    if function == "sum":
        return sum(numbers)
    if function == "max":
        return max(numbers) if numbers else None
    if function == "min":
        return min(numbers) if numbers else None
    if function == "average":
        return sum(numbers) / len(numbers) if numbers else None
    if function == "and":
        return all(bool(v) for v in values) if values else False
    if function == "or":
        return any(bool(v) for v in values)
    if function == "xor":
        return sum(1 for v in values if v) % 2 == 1
    if function in ("concatenate", "array_join"):
        return ", ".join(str(v) for v in values)
    if function == "array_unique":
        return list(dict.fromkeys(values))
    if function == "array_compact":
        return [v for v in values if not _is_empty(v)]
    raise ValueError(f"Unsupported rollup function: {function}")


# ── Conditions ───────────────────────────────────────────────────────────


def _compare(op: Callable[[Any, Any], bool], cell: Any, value: Any) -> bool:
    if cell is None or value is None:
        return False
    try:
        return op(cell, value)
    except TypeError:
        return False


def _clause_matches(clause: Mapping[str, Any], data: Mapping[str, Any]) -> bool:
    cell = data.get(clause["fieldId"])
    value = clause.get("value")
    op = clause.get("operator", "is")
    cells = cell if isinstance(cell, list) else [cell]
    if op == "isEmpty":
        return _is_empty(cell)
    if op == "isNotEmpty":
        return not _is_empty(cell)
    if op == "is":
        return value in cells if isinstance(cell, list) else cell == value
    if op == "isNot":
        return value not in cells if isinstance(cell, list) else cell != value
    if op == "contains":
        return any(str(value).lower() in str(c).lower() for c in cells if c is not None)
    if op == "doesNotContain":
        return not any(str(value).lower() in str(c).lower() for c in cells if c is not None)
    if op == "isGreater":
        return _compare(operator.gt, cell, value)
    if op == "isGreaterEqual":
        return _compare(operator.ge, cell, value)
    if op == "isLess":
        return _compare(operator.lt, cell, value)
    if op == "isLessEqual":
        return _compare(operator.le, cell, value)
    if op == "isAnyOf":
        return any(c in (value or []) for c in cells)
    if op == "isNoneOf":
        return not any(c in (value or []) for c in cells)
    raise ValueError(f"Unsupported filter operator: {op}")


def filter_matches(filter_: Mapping[str, Any], data: Mapping[str, Any]) -> bool:
    """Evaluate a (possibly nested) filter set against one record's values."""
    if "fieldId" in filter_:
        return _clause_matches(filter_, data)
    results = (filter_matches(item, data) for item in filter_.get("filterSet") or [])
    if filter_.get("conjunction", "and") == "or":
        return any(results)
    return all(results)


def _sort_key(value: Any) -> tuple[int, Any]:
    # mixed-type columns: numbers first, then strings, then the rest by repr
    if isinstance(value, (int, float)):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return (2, repr(value))


def apply_condition(condition: Condition, records: Mapping[str, Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    """Filter, sort and limit foreign records."""
    matched = [data for data in records.values() if filter_matches(condition.filter, data)]
    if condition.sort:
        sort_field = condition.sort["fieldId"]
        descending = condition.sort.get("order", "asc") == "desc"
        present = [d for d in matched if d.get(sort_field) is not None]
        missing = [d for d in matched if d.get(sort_field) is None]
        present.sort(key=lambda d: _sort_key(d[sort_field]), reverse=descending)
        matched = present + missing
    if condition.limit is not None:
        matched = matched[:condition.limit]
    return matched


# ── Formulas ─────────────────────────────────────────────────────────────


def _fn_if(condition, when_true=None, when_false=None):
    return when_true if condition else when_false


def _fn_round(value, digits=0):
    return round(value, int(digits)) if _is_number(value) else None


FORMULA_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "SUM": lambda *args: sum(_numbers(flatten(args))),
    "AVERAGE": lambda *args: (lambda n: sum(n) / len(n) if n else None)(_numbers(flatten(args))),
    "MAX": lambda *args: max(_numbers(flatten(args)), default=None),
    "MIN": lambda *args: min(_numbers(flatten(args)), default=None),
    "COUNT": lambda *args: len(_numbers(flatten(args))),
    "COUNTALL": lambda *args: len(flatten(args)),
    "ABS": lambda value: abs(value) if _is_number(value) else None,
    "ROUND": _fn_round,
    "IF": _fn_if,
    "AND": lambda *args: all(flatten(args)),
    "OR": lambda *args: any(flatten(args)),
    "NOT": lambda value: not value,
    "CONCATENATE": lambda *args: "".join(str(v) for v in flatten(args)),
    "UPPER": lambda value: str(value).upper() if value is not None else None,
    "LOWER": lambda value: str(value).lower() if value is not None else None,
    "LEN": lambda value: len(str(value)) if value is not None else 0,
}

_BINARY_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.BitAnd: lambda a, b: f"{'' if a is None else a}{'' if b is None else b}",
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_BRACED_REF = re.compile(r"\{(" + FIELD_ID_PATTERN.pattern + r")\}")


class FormulaError(ValidationError):
    """Expression cannot be parsed or uses unsupported syntax."""


class FormulaEvaluator:
    """Evaluates formula expressions with ``{fldXXX}`` references.

    Runtime errors (division by zero, type mismatches) yield ``None`` for the
    cell rather than failing the recomputation.
    """

    def __init__(self, functions: Mapping[str, Callable[..., Any]] | None = None):
        self._functions = dict(FORMULA_FUNCTIONS if functions is None else functions)
        self._cache: dict[str, ast.Expression] = {}

    def compile(self, expression: str) -> ast.Expression:
        tree = self._cache.get(expression)
        if tree is None:
            source = _BRACED_REF.sub(lambda m: f"__ref_{m.group(1)}", expression)
            try:
                tree = ast.parse(source.strip(), mode="eval")
            except SyntaxError as exc:
                raise FormulaError(f"Cannot parse formula {expression!r}: {exc.msg}") from exc
            self._cache[expression] = tree
        return tree

    def evaluate(self, expression: str, values: Mapping[str, Any]) -> Any:
        tree = self.compile(expression)
        try:
            result = self._eval(tree.body, values)
        except (ArithmeticError, TypeError, ValueError):
            return None
        if isinstance(result, float) and (math.isnan(result) or math.isinf(result)):
            return None
        return result

    def _eval(self, node: ast.AST, values: Mapping[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id.startswith("__ref_"):
                return values.get(node.id[len("__ref_"):])
            if node.id.upper() in ("TRUE", "FALSE"):
                return node.id.upper() == "TRUE"
            raise FormulaError(f"Unknown name {node.id!r}")
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
            left = self._eval(node.left, values)
            right = self._eval(node.right, values)
            if not isinstance(node.op, ast.BitAnd) and (left is None or right is None):
                return None
            return _BINARY_OPS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, values)
            if isinstance(node.op, ast.Not):
                return not operand
            if operand is None:
                return None
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
        if isinstance(node, ast.BoolOp):
            items = [self._eval(v, values) for v in node.values]
            return all(items) if isinstance(node.op, ast.And) else any(items)
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, values)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, values)
                if type(op) not in _COMPARE_OPS or not _compare(_COMPARE_OPS[type(op)], left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
            function = self._functions.get(node.func.id.upper())
            if function is None:
                raise FormulaError(f"Unknown function {node.func.id!r}")
            return function(*(self._eval(arg, values) for arg in node.args))
        raise FormulaError(f"Unsupported formula syntax: {ast.dump(node)}")


# ── Field evaluation ─────────────────────────────────────────────────────


class ValueEvaluator(Protocol):
    def evaluate_many(
        self,
        descriptor: FieldDescriptor,
        records: Mapping[str, Mapping[str, Any]],
    ) -> dict[str, Any]: ...


class RecordEvaluator:
    """Computes a field's value for a batch of records of its table."""

    def __init__(self, store: RecordStore, formula: FormulaEvaluator | None = None):
        self._store = store
        self._formula = formula or FormulaEvaluator()

    def evaluate_many(
        self,
        descriptor: FieldDescriptor,
        records: Mapping[str, Mapping[str, Any]],
    ) -> dict[str, Any]:
        kind = descriptor.kind
        if isinstance(kind, FormulaKind):
            return {rid: self._formula.evaluate(kind.expression, data) for rid, data in records.items()}
        if isinstance(kind, (LookupKind, RollupKind)):
            return {rid: self._linked_value(descriptor, rid) for rid in records}
        if isinstance(kind, (ConditionalLookupKind, ConditionalRollupKind)):
            # does not depend on the host record: one evaluation per batch
            value = self._conditional_value(descriptor)
            return {rid: value for rid in records}
        if isinstance(kind, LinkKind):
            return {rid: self._store.linked_ids(descriptor.id, rid) for rid in records}
        return {rid: data.get(descriptor.id) for rid, data in records.items()}

    def _linked_value(self, descriptor: FieldDescriptor, record_id: str) -> Any:
        kind = descriptor.kind
        linked = self._store.linked_ids(kind.link_field_id, record_id)
        foreign = self._store.get_many(kind.foreign_table_id, linked)
        values = flatten(foreign[fid].get(kind.lookup_field_id) for fid in linked if fid in foreign)
        if isinstance(kind, RollupKind):
            return aggregate(rollup_function(kind.expression), values)
        return values

    def _conditional_value(self, descriptor: FieldDescriptor) -> Any:
        kind = descriptor.kind
        matched = apply_condition(kind.condition, self._store.all_records(kind.foreign_table_id))
        values = flatten(data.get(kind.lookup_field_id) for data in matched)
        if isinstance(kind, ConditionalRollupKind):
            return aggregate(rollup_function(kind.expression), values)
        return values
