"""
Tests for tablespine.hashing.

Tests cover:
- Deterministic hash computation
- Hash length options
- Plan hash stability under reordering that carries no meaning
"""

from tablespine.hashing import canonical_json, compute_hash, compute_plan_hash


class TestComputeHash:
    def test_deterministic(self):
        assert compute_hash("a", "b") == compute_hash("a", "b")

    def test_default_length(self):
        assert len(compute_hash("value")) == 32

    def test_custom_length(self):
        assert len(compute_hash("value", length=64)) == 64

    def test_order_matters(self):
        assert compute_hash("a", "b") != compute_hash("b", "a")


class TestCanonicalJson:
    def test_sorted_keys_no_whitespace(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


class TestPlanHash:
    STEPS = [
        {"table_id": "tblB", "level": 0, "field_ids": ["fld2", "fld1"], "record_scope": "dirty"},
        {"table_id": "tblC", "level": 1, "field_ids": ["fld3"], "record_scope": "dirty"},
    ]

    def test_field_order_within_step_ignored(self):
        reordered = [dict(self.STEPS[0], field_ids=["fld1", "fld2"]), self.STEPS[1]]
        assert compute_plan_hash("update", "tblA", self.STEPS) == compute_plan_hash("update", "tblA", reordered)

    def test_step_listing_order_ignored(self):
        assert compute_plan_hash("update", "tblA", self.STEPS) == compute_plan_hash(
            "update", "tblA", list(reversed(self.STEPS))
        )

    def test_key_order_ignored(self):
        shuffled = [{k: s[k] for k in reversed(list(s))} for s in self.STEPS]
        assert compute_plan_hash("update", "tblA", self.STEPS) == compute_plan_hash("update", "tblA", shuffled)

    def test_change_type_and_seed_table_matter(self):
        base = compute_plan_hash("update", "tblA", self.STEPS)
        assert base != compute_plan_hash("create", "tblA", self.STEPS)
        assert base != compute_plan_hash("update", "tblZ", self.STEPS)

    def test_different_fields_differ(self):
        other = [dict(self.STEPS[0], field_ids=["fld9"]), self.STEPS[1]]
        assert compute_plan_hash("update", "tblA", self.STEPS) != compute_plan_hash("update", "tblA", other)

    def test_length(self):
        assert len(compute_plan_hash("update", "tblA", self.STEPS)) == 64

    def test_operations_follow_their_fields(self):
        step = {"table_id": "tblB", "level": 0, "record_scope": "dirty"}
        listed = [dict(step, field_ids=["fldA", "fldB"], operations=["formula", "lookup"])]
        swapped = [dict(step, field_ids=["fldB", "fldA"], operations=["lookup", "formula"])]
        assert compute_plan_hash("update", "tblA", listed) == compute_plan_hash("update", "tblA", swapped)

    def test_operation_pairing_matters(self):
        step = {"table_id": "tblB", "level": 0, "record_scope": "dirty"}
        listed = [dict(step, field_ids=["fldA", "fldB"], operations=["formula", "lookup"])]
        crossed = [dict(step, field_ids=["fldA", "fldB"], operations=["lookup", "formula"])]
        assert compute_plan_hash("update", "tblA", listed) != compute_plan_hash("update", "tblA", crossed)
