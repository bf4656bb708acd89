"""
Tests for RecordOrderCalculator.

Tests cover:
- Lazy order column creation and backfill
- Key allocation after / before an anchor and at the edges of the view
- Rebalance on exhausted gaps and duplicate keys
- Bounded retries and input validation
"""

from __future__ import annotations

import math

import pytest

from conftest import BASE_ID
from tablespine.errors import NotFoundError, OrderCalculationError, ValidationError
from tablespine.records import RecordOrderCalculator, order_column_name

VIEW = "viwMain"


@pytest.fixture()
def table(engine):
    table_id = engine.create_table(BASE_ID, "Rows").id
    engine.insert_records(table_id, [{}, {}])
    return table_id


@pytest.fixture()
def records(engine, table):
    return engine.store.all_ids(table)


class TestOrderColumn:
    def test_backfilled_from_insert_order(self, engine, table, records):
        assert [engine.ordering.get_order(table, VIEW, r) for r in records] == [1.0, 2.0]
        assert order_column_name(VIEW) in engine.store.order_columns(table)

    def test_ensure_is_idempotent(self, engine, table):
        first = engine.ordering.ensure_order_column(table, VIEW)
        assert engine.ordering.ensure_order_column(table, VIEW) == first

    def test_new_records_append(self, engine, table, records):
        engine.ordering.ensure_order_column(table, VIEW)
        (new_id,), _ = engine.insert_records(table, [{}]).unpack()
        assert engine.ordering.get_order(table, VIEW, new_id) == 3.0
        assert engine.ordering.ordered_ids(table, VIEW) == [*records, new_id]

    def test_invalid_view_id(self, engine, table, records):
        with pytest.raises(ValidationError):
            engine.calculate_orders(table, "viw; DROP TABLE x", records[0], "after", 1)


class TestAllocation:
    def test_after_anchor(self, engine, table, records):
        assert engine.calculate_orders(table, VIEW, records[0], "after", 3) == [1.25, 1.5, 1.75]

    def test_before_first_record(self, engine, table, records):
        assert engine.calculate_orders(table, VIEW, records[0], "before", 3) == [0.25, 0.5, 0.75]

    def test_after_last_record(self, engine, table, records):
        assert engine.calculate_orders(table, VIEW, records[1], "after", 1) == [2.5]

    def test_keys_strictly_between_neighbours(self, engine, table, records):
        keys = engine.calculate_orders(table, VIEW, records[1], "before", 7)
        assert keys == sorted(keys)
        assert 1.0 < keys[0] and keys[-1] < 2.0
        assert len(set(keys)) == 7

    def test_allocation_does_not_write(self, engine, table, records):
        engine.calculate_orders(table, VIEW, records[0], "after", 2)
        assert [engine.ordering.get_order(table, VIEW, r) for r in records] == [1.0, 2.0]


class TestRebalance:
    def test_exhausted_gap_triggers_rebalance(self, engine, table, records):
        engine.ordering.set_orders(table, VIEW, {records[0]: 1.0, records[1]: math.nextafter(1.0, 2.0)})
        keys = engine.calculate_orders(table, VIEW, records[0], "after", 1)
        assert keys == [1.5]
        assert [engine.ordering.get_order(table, VIEW, r) for r in records] == [1.0, 2.0]

    def test_duplicate_keys_rebalanced_in_insert_order(self, engine, table, records):
        engine.ordering.set_orders(table, VIEW, {records[0]: 4.0, records[1]: 4.0})
        engine.calculate_orders(table, VIEW, records[1], "after", 1)
        assert engine.ordering.ordered_ids(table, VIEW) == records
        assert engine.ordering.get_order(table, VIEW, records[1]) == 2.0

    def test_rebalance_keeps_relative_order(self, engine, table, records):
        (third,), _ = engine.insert_records(table, [{}]).unpack()
        engine.ordering.set_orders(table, VIEW, {records[0]: 10.0, records[1]: -3.0, third: 0.5})
        assert engine.ordering.rebalance(table, VIEW) == 3
        assert engine.ordering.ordered_ids(table, VIEW) == [records[1], third, records[0]]
        assert engine.ordering.get_order(table, VIEW, records[0]) == 3.0

    def test_bounded_attempts(self, engine, settings, table, records):
        calculator = RecordOrderCalculator(
            engine.store, settings.model_copy(update={"order_max_rebalance_attempts": 1})
        )
        engine.ordering.set_orders(table, VIEW, {records[0]: 1.0, records[1]: math.nextafter(1.0, 2.0)})
        with pytest.raises(OrderCalculationError):
            calculator.calculate_orders(table, VIEW, records[0], "after", 1)


class TestValidation:
    def test_missing_anchor(self, engine, table):
        with pytest.raises(NotFoundError):
            engine.calculate_orders(table, VIEW, "recMissing", "after", 1)

    def test_bad_position(self, engine, table, records):
        with pytest.raises(ValidationError):
            engine.calculate_orders(table, VIEW, records[0], "above", 1)

    def test_bad_count(self, engine, table, records):
        with pytest.raises(ValidationError):
            engine.calculate_orders(table, VIEW, records[0], "after", 0)
