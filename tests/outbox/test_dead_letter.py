"""Tests for DeadLetterStore: listing, requeue and purge."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import BASE_ID, T0
from tablespine.enums import ChangeType, TaskStatus
from tablespine.errors import NotFoundError, ValidationError
from tablespine.outbox import ComputedUpdateOutbox, DeadLetterStore, OutboxTaskInput


def _input(field_id: str, run_id: str = "runA", **overrides) -> OutboxTaskInput:
    data = {
        "base_id": BASE_ID,
        "seed_table_id": "tblA",
        "change_type": ChangeType.UPDATE,
        "steps": [{"table_id": "tblB", "level": 0, "field_ids": [field_id], "operations": ["formula"]}],
        "seed_record_ids": ["rec1"],
        "run_id": run_id,
        "run_total_steps": 1,
    }
    data.update(overrides)
    return OutboxTaskInput(**data)


@pytest.fixture()
def outbox(conn, settings) -> ComputedUpdateOutbox:
    return ComputedUpdateOutbox(conn, settings)


@pytest.fixture()
def store(conn) -> DeadLetterStore:
    return DeadLetterStore(conn)


def fail_now(outbox: ComputedUpdateOutbox, task_input: OutboxTaskInput, now) -> str:
    task_id = outbox.enqueue(task_input, now=now)
    task = outbox.claim("w1", now=now)
    assert task.id == task_id
    outbox.mark_failed(task, "w1", ValidationError("bad input"), trace="trace", now=now)
    return task_id


class TestListing:
    def test_newest_first(self, outbox, store):
        older = fail_now(outbox, _input("fld1"), T0)
        newer = fail_now(outbox, _input("fld2", run_id="runB"), T0 + timedelta(minutes=1))
        assert [e.id for e in store.list()] == [newer, older]
        assert [e.id for e in store.list(run_id="runA")] == [older]
        assert [e.id for e in store.list(limit=1, offset=1)] == [older]
        assert store.count() == 2
        assert store.count(run_id="runB") == 1

    def test_get(self, outbox, store):
        task_id = fail_now(outbox, _input("fld1"), T0)
        entry = store.get(task_id)
        assert entry.last_error == "ValidationError: bad input"
        assert entry.step_count == 1
        assert entry.to_dict()["failed_at"] == T0.isoformat()
        assert store.get("cuoMissing") is None


class TestRequeue:
    def test_requeue_resets_attempts(self, outbox, store):
        task_id = fail_now(outbox, _input("fld1"), T0)
        new_id = store.requeue(task_id, now=T0 + timedelta(minutes=5))
        assert store.get(task_id) is None

        task = outbox.get(new_id)
        assert task.status is TaskStatus.PENDING
        assert task.attempts == 0
        assert task.last_error is None
        assert task.run_id == "runA"
        assert task.next_run_at == T0 + timedelta(minutes=5)
        assert outbox.claim("w1", now=T0 + timedelta(minutes=5)).id == new_id

    def test_requeue_missing(self, store):
        with pytest.raises(NotFoundError):
            store.requeue("cuoMissing")

    def test_successor_requeued_before_predecessor_is_parked(self, outbox, store):
        first = outbox.enqueue(_input("fld1", run_total_steps=2), now=T0)
        second = outbox.enqueue(
            _input("fld2", run_total_steps=2, run_completed_steps_before=1, parked=True), now=T0
        )
        task = outbox.claim("w1", now=T0)
        outbox.mark_failed(task, "w1", ValidationError("bad"), now=T0)
        assert store.count() == 2

        requeued_second = store.requeue(second, now=T0)
        assert outbox.get(requeued_second).is_parked

        requeued_first = store.requeue(first, now=T0)
        assert not outbox.get(requeued_first).is_parked
        task = outbox.claim("w1", now=T0)
        assert task.id == requeued_first
        assert outbox.mark_done(task, "w1", now=T0) == requeued_second


class TestPurge:
    def test_purge_older_than(self, outbox, store):
        fail_now(outbox, _input("fld1"), T0)
        fail_now(outbox, _input("fld2"), T0 + timedelta(days=3))
        assert store.purge(timedelta(days=1), now=T0 + timedelta(days=3)) == 1
        assert store.count() == 1

    def test_purge_all(self, outbox, store):
        fail_now(outbox, _input("fld1"), T0)
        assert store.purge() == 1
        assert store.count() == 0
