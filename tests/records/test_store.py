"""
Tests for RecordStore.

Tests cover:
- Insert / read of cell values
- Link cells: junction rows, relationship cardinality, symmetric mirroring
- Computed value writes that report only real changes
- Delete cleanup of links pointing at deleted records
"""

from __future__ import annotations

import pytest

from conftest import BASE_ID
from tablespine.errors import RecordNotFoundError, ValidationError
from tablespine.records import normalize_link_value


@pytest.fixture()
def linked(engine):
    """Projects <-(manyMany)- Tasks, two-way."""
    projects = engine.create_table(BASE_ID, "Projects").id
    tasks = engine.create_table(BASE_ID, "Tasks").id
    title = engine.create_field({"tableId": projects, "name": "Title"}).id
    link = engine.create_field(
        {
            "tableId": tasks,
            "name": "Projects",
            "type": "link",
            "options": {"relationship": "manyMany", "foreignTableId": projects, "lookupFieldId": title},
        }
    )
    return {
        "projects": projects,
        "tasks": tasks,
        "title": title,
        "link": link.id,
        "symmetric": link.kind.symmetric_field_id,
    }


class TestReadWrite:
    def test_insert_and_get(self, engine):
        table = engine.create_table(BASE_ID, "T").id
        name = engine.create_field({"tableId": table, "name": "Name"}).id
        ids, changes = engine.store.insert(table, [{name: "a"}, {name: "b"}])
        assert len(ids) == 2
        assert changes == []
        assert engine.store.get(table, ids[0]) == {name: "a"}
        assert engine.store.all_ids(table) == ids
        assert engine.store.count(table) == 2

    def test_explicit_record_ids(self, engine):
        table = engine.create_table(BASE_ID, "T").id
        ids, _ = engine.store.insert(table, [{}, {}], ["recOne", "recTwo"])
        assert ids == ["recOne", "recTwo"]
        assert list(engine.store.get_many(table, ["recTwo", "recMissing", "recOne"])) == ["recTwo", "recOne"]

    def test_write_missing_record(self, engine):
        table = engine.create_table(BASE_ID, "T").id
        with pytest.raises(RecordNotFoundError):
            engine.store.write(table, "recNope", {"fldX": 1})
        assert engine.store.get(table, "recNope") is None


class TestLinks:
    def test_symmetric_mirroring(self, engine, linked):
        (p1, p2), _ = engine.store.insert(linked["projects"], [{}, {}])
        (t1,), changes = engine.store.insert(linked["tasks"], [{linked["link"]: [p1, {"id": p2}]}])

        assert engine.store.get(linked["tasks"], t1)[linked["link"]] == [p1, p2]
        assert engine.store.get(linked["projects"], p1)[linked["symmetric"]] == [t1]
        assert engine.store.linked_ids(linked["symmetric"], p2) == [t1]
        assert len(changes) == 1
        assert changes[0].field_id == linked["symmetric"]
        assert changes[0].record_ids == {p1, p2}

    def test_unlink_updates_symmetric(self, engine, linked):
        (p1, p2), _ = engine.store.insert(linked["projects"], [{}, {}])
        (t1,), _ = engine.store.insert(linked["tasks"], [{linked["link"]: [p1, p2]}])
        changes = engine.store.write(linked["tasks"], t1, {linked["link"]: [p2]})
        assert engine.store.get(linked["projects"], p1)[linked["symmetric"]] == []
        assert changes[0].record_ids == {p1}

    def test_unchanged_link_reports_nothing(self, engine, linked):
        (p1,), _ = engine.store.insert(linked["projects"], [{}])
        (t1,), _ = engine.store.insert(linked["tasks"], [{linked["link"]: p1}])
        assert engine.store.write(linked["tasks"], t1, {linked["link"]: [p1]}) == []

    def test_link_to_missing_record(self, engine, linked):
        (t1,), _ = engine.store.insert(linked["tasks"], [{}])
        with pytest.raises(RecordNotFoundError):
            engine.store.write(linked["tasks"], t1, {linked["link"]: ["recGhost"]})

    def test_single_relationship_keeps_first(self, engine, lookup_chain):
        (r1, r1b), _ = engine.store.insert(lookup_chain.t1, [{}, {}])
        (r2,), _ = engine.store.insert(lookup_chain.t2, [{lookup_chain.link12: [r1, r1b]}])
        assert engine.store.linked_ids(lookup_chain.link12, r2) == [r1]

    def test_records_linking_to(self, engine, linked):
        (p1, p2), _ = engine.store.insert(linked["projects"], [{}, {}])
        (t1, t2, _t3), _ = engine.store.insert(
            linked["tasks"], [{linked["link"]: [p1]}, {linked["link"]: [p1, p2]}, {}]
        )
        assert sorted(engine.store.records_linking_to(linked["link"], [p1])) == sorted([t1, t2])
        assert engine.store.records_linking_to(linked["link"], [p2]) == [t2]


class TestNormalizeLinkValue:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, []),
            ("recA", ["recA"]),
            ({"id": "recA"}, ["recA"]),
            (["recA", {"id": "recB"}, "recA"], ["recA", "recB"]),
        ],
    )
    def test_accepted_shapes(self, value, expected):
        assert normalize_link_value(value) == expected

    @pytest.mark.parametrize("value", [[1], [{"name": "x"}], [""]])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            normalize_link_value(value)


class TestSetValues:
    def test_reports_changed_only(self, engine):
        table = engine.create_table(BASE_ID, "T").id
        (r1, r2), _ = engine.store.insert(table, [{"fldV": 1}, {"fldV": 2}])
        changed = engine.store.set_values(table, {r1: {"fldV": 1}, r2: {"fldV": 5}, "recGone": {"fldV": 0}})
        assert changed == {r2}
        assert engine.store.get(table, r2) == {"fldV": 5}


class TestDelete:
    def test_delete_unlinks_referencing_records(self, engine, linked):
        (p1, p2), _ = engine.store.insert(linked["projects"], [{}, {}])
        (t1,), _ = engine.store.insert(linked["tasks"], [{linked["link"]: [p1, p2]}])

        changes = engine.store.delete(linked["projects"], [p1])
        assert engine.store.get(linked["projects"], p1) is None
        assert engine.store.get(linked["tasks"], t1)[linked["link"]] == [p2]
        assert [(c.table_id, c.field_id, c.record_ids) for c in changes] == [
            (linked["tasks"], linked["link"], {t1})
        ]

    def test_delete_removes_own_link_rows(self, engine, linked):
        (p1,), _ = engine.store.insert(linked["projects"], [{}])
        (t1,), _ = engine.store.insert(linked["tasks"], [{linked["link"]: [p1]}])
        engine.store.delete(linked["tasks"], [t1])
        assert engine.store.linked_ids(linked["link"], t1) == []

    def test_delete_nothing(self, engine, linked):
        assert engine.store.delete(linked["projects"], []) == []
