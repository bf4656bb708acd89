"""Tests for formula evaluation, aggregation and conditions."""

from __future__ import annotations

import pytest

from conftest import BASE_ID
from tablespine.fields.models import Condition
from tablespine.ids import generate_id
from tablespine.records import FormulaError, FormulaEvaluator
from tablespine.records.evaluator import aggregate, apply_condition, filter_matches, flatten

A = generate_id("fld")
B = generate_id("fld")


# ── Formulas ─────────────────────────────────────────────────────────────


class TestFormulaEvaluator:
    @pytest.mark.parametrize(
        ("expression", "values", "expected"),
        [
            (f"{{{A}}} + 1", {A: 2}, 3),
            (f"{{{A}}} * {{{B}}}", {A: 3, B: 4}, 12),
            (f"{{{A}}} / {{{B}}}", {A: 1, B: 4}, 0.25),
            ("2 ** 3", {}, 8),
            (f"{{{A}}} > 3", {A: 5}, True),
            ("1 < 2 < 3", {}, True),
            (f'IF({{{A}}} > 1, "big", "small")', {A: 0}, "small"),
            (f'"n=" & {{{A}}}', {A: 7}, "n=7"),
            (f'"n=" & {{{A}}}', {}, "n="),
            (f"CONCATENATE({{{A}}}, \"-\", {{{B}}})", {A: "x", B: ["y", "z"]}, "x-yz"),
            (f"SUM({{{A}}}, 1)", {A: [1, 2, None]}, 4),
            (f"ROUND({{{A}}}, 2)", {A: 2.567}, 2.57),
            ("AVERAGE()", {}, None),
            ("TRUE and not FALSE", {}, True),
            (f"LEN({{{A}}})", {A: "abcd"}, 4),
        ],
    )
    def test_evaluate(self, expression, values, expected):
        assert FormulaEvaluator().evaluate(expression, values) == expected

    def test_missing_reference_propagates_none(self):
        assert FormulaEvaluator().evaluate(f"{{{A}}} + 1", {}) is None

    def test_runtime_errors_become_none(self):
        evaluator = FormulaEvaluator()
        assert evaluator.evaluate(f"{{{A}}} / 0", {A: 1}) is None
        assert evaluator.evaluate(f"{{{A}}} + 1", {A: "text"}) is None
        assert evaluator.evaluate("1e308 * 10", {}) is None

    @pytest.mark.parametrize("expression", ["1 +", "NOPE(1)", "x + 1", "[1, 2]"])
    def test_invalid_expression(self, expression):
        with pytest.raises(FormulaError):
            FormulaEvaluator().evaluate(expression, {})

    def test_custom_functions(self):
        evaluator = FormulaEvaluator(functions={"DOUBLE": lambda v: v * 2})
        assert evaluator.evaluate(f"DOUBLE({{{A}}})", {A: 4}) == 8
        with pytest.raises(FormulaError):
            evaluator.evaluate("SUM(1)", {})


# ── Aggregation ──────────────────────────────────────────────────────────


class TestAggregate:
    VALUES = [3, "x", 1, "", 2]

    @pytest.mark.parametrize(
        ("function", "expected"),
        [
            ("countall", 5),
            ("counta", 4),
            ("count", 3),
            ("sum", 6),
            ("max", 3),
            ("min", 1),
            ("average", 2),
            ("concatenate", "3, x, 1, , 2"),
            ("array_compact", [3, "x", 1, 2]),
        ],
    )
    def test_functions(self, function, expected):
        assert aggregate(function, self.VALUES) == expected

    def test_empty(self):
        assert aggregate("sum", []) == 0
        assert aggregate("max", []) is None
        assert aggregate("and", []) is False

    def test_unknown(self):
        with pytest.raises(ValueError):
            aggregate("median", [1])

    def test_flatten(self):
        assert flatten([[1, [2, None]], None, 3]) == [1, 2, 3]


# ── Conditions ───────────────────────────────────────────────────────────


class TestConditions:
    RECORDS = {
        "rec1": {"status": "open", "amount": 5, "tags": ["a", "b"]},
        "rec2": {"status": "closed", "amount": 3},
        "rec3": {"status": "open", "amount": 9},
        "rec4": {"status": "open"},
    }

    def test_clause_operators(self):
        data = self.RECORDS["rec1"]
        assert filter_matches({"fieldId": "status", "operator": "is", "value": "open"}, data)
        assert filter_matches({"fieldId": "tags", "operator": "is", "value": "b"}, data)
        assert filter_matches({"fieldId": "status", "operator": "contains", "value": "OP"}, data)
        assert filter_matches({"fieldId": "amount", "operator": "isGreaterEqual", "value": 5}, data)
        assert not filter_matches({"fieldId": "missing", "operator": "isLess", "value": 1}, data)
        assert filter_matches({"fieldId": "missing", "operator": "isEmpty"}, data)
        assert filter_matches({"fieldId": "status", "operator": "isAnyOf", "value": ["open", "x"]}, data)

    def test_nested_sets(self):
        filter_ = {
            "conjunction": "or",
            "filterSet": [
                {"fieldId": "status", "operator": "is", "value": "closed"},
                {
                    "conjunction": "and",
                    "filterSet": [
                        {"fieldId": "status", "operator": "is", "value": "open"},
                        {"fieldId": "amount", "operator": "isGreater", "value": 6},
                    ],
                },
            ],
        }
        matched = [rid for rid, data in self.RECORDS.items() if filter_matches(filter_, data)]
        assert matched == ["rec2", "rec3"]

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            filter_matches({"fieldId": "status", "operator": "near"}, {})

    def test_sort_and_limit(self):
        condition = Condition(
            filter={"filterSet": [{"fieldId": "status", "operator": "is", "value": "open"}]},
            sort={"fieldId": "amount", "order": "desc"},
            limit=2,
        )
        assert [d.get("amount") for d in apply_condition(condition, self.RECORDS)] == [9, 5]

    def test_missing_sort_values_last(self):
        condition = Condition(
            filter={"filterSet": [{"fieldId": "status", "operator": "is", "value": "open"}]},
            sort={"fieldId": "amount"},
        )
        assert [d.get("amount") for d in apply_condition(condition, self.RECORDS)] == [5, 9, None]

    def test_mixed_type_sort_column(self):
        records = {
            "rec1": {"status": "open", "amount": "n/a"},
            "rec2": {"status": "open", "amount": 7},
            "rec3": {"status": "open", "amount": ["x"]},
            "rec4": {"status": "open", "amount": 2.5},
            "rec5": {"status": "open"},
        }
        condition = Condition(
            filter={"filterSet": [{"fieldId": "status", "operator": "is", "value": "open"}]},
            sort={"fieldId": "amount"},
        )
        assert [d.get("amount") for d in apply_condition(condition, records)] == [2.5, 7, "n/a", ["x"], None]

        descending = Condition(filter=condition.filter, sort={"fieldId": "amount", "order": "desc"}, limit=2)
        assert [d.get("amount") for d in apply_condition(descending, records)] == [["x"], "n/a"]


# ── Field kinds through the engine ───────────────────────────────────────


class TestRecordEvaluator:
    def test_rollup_and_conditional_lookup(self, engine):
        orders = engine.create_table(BASE_ID, "Orders").id
        customers = engine.create_table(BASE_ID, "Customers").id
        name = engine.create_field({"tableId": customers, "name": "Name"}).id
        amount = engine.create_field({"tableId": orders, "name": "Amount", "type": "number"}).id
        status = engine.create_field({"tableId": orders, "name": "Status"}).id
        customer = engine.create_field(
            {
                "tableId": orders,
                "name": "Customer",
                "type": "link",
                "options": {"relationship": "manyOne", "foreignTableId": customers, "lookupFieldId": name},
            }
        )
        spend = engine.create_field(
            {
                "tableId": customers,
                "name": "Spend",
                "type": "rollup",
                "options": {"expression": "sum({values})"},
                "lookupOptions": {
                    "foreignTableId": orders,
                    "linkFieldId": customer.kind.symmetric_field_id,
                    "lookupFieldId": amount,
                },
            }
        ).id
        biggest_open = engine.create_field(
            {
                "tableId": customers,
                "name": "Biggest open",
                "type": "number",
                "isConditionalLookup": True,
                "lookupOptions": {
                    "foreignTableId": orders,
                    "lookupFieldId": amount,
                    "filter": {"filterSet": [{"fieldId": status, "operator": "is", "value": "open"}]},
                    "sort": {"fieldId": amount, "order": "desc"},
                    "limit": 1,
                },
            }
        ).id

        (c1,), _ = engine.insert_records(customers, [{name: "Ada"}]).unpack()
        engine.insert_records(
            orders,
            [
                {amount: 4, status: "open", customer.id: [c1]},
                {amount: 6, status: "closed", customer.id: [c1]},
                {amount: 5, status: "open"},
            ],
        )
        record = engine.get_record(customers, c1)
        assert record[spend] == 10
        assert record[biggest_open] == [5]
