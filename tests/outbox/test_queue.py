"""
Tests for ComputedUpdateOutbox.

Tests cover:
- Idempotent enqueue (merge into a pending task with the same plan hash)
- Claim ordering, due times and atomicity across connections
- Retry with backoff, dead-lettering on exhaustion or non-retryable errors
- Lock expiry
- Chained tasks of one run, run progress and stats
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from conftest import BASE_ID, T0
from tablespine.connection import create_connection
from tablespine.enums import ChangeType, TaskStatus
from tablespine.errors import LockLostError, NotFoundError, ValidationError
from tablespine.outbox import ComputedUpdateOutbox, DeadLetterStore, OutboxTaskInput, merge_seed_groups
from tablespine.timestamps import FAR_FUTURE


def step(field_id="fldX", level=0, table_id="tblB"):
    return {
        "table_id": table_id,
        "level": level,
        "field_ids": [field_id],
        "operations": ["lookup"],
        "record_scope": "dirty",
    }


def task_input(**overrides) -> OutboxTaskInput:
    data = {
        "base_id": BASE_ID,
        "seed_table_id": "tblA",
        "change_type": ChangeType.UPDATE,
        "steps": [step()],
        "seed_record_ids": ["rec1"],
        "estimated_complexity": 5,
        "run_total_steps": 1,
    }
    data.update(overrides)
    return OutboxTaskInput(**data)


@pytest.fixture()
def outbox(conn, settings) -> ComputedUpdateOutbox:
    return ComputedUpdateOutbox(conn, settings)


@pytest.fixture()
def dead_letters(conn) -> DeadLetterStore:
    return DeadLetterStore(conn)


# =============================================================================
# Enqueue
# =============================================================================


class TestEnqueue:
    def test_enqueue_pending(self, outbox):
        task_id = outbox.enqueue(task_input(run_id="runA"), now=T0)
        task = outbox.get(task_id)
        assert task.status is TaskStatus.PENDING
        assert task.attempts == 0
        assert task.max_attempts == 3
        assert task.next_run_at == T0
        assert task.step_count == 1
        assert task.origin_run_ids == ["runA"]
        assert len(task.plan_hash) == 64

    def test_same_plan_merges(self, outbox):
        first = outbox.enqueue_or_merge(task_input(run_id="runA"), now=T0)
        second = outbox.enqueue_or_merge(
            task_input(run_id="runB", seed_record_ids=["rec2", "rec1"], estimated_complexity=9),
            now=T0 + timedelta(seconds=1),
        )
        assert second.merged is True
        assert second.task_id == first.task_id
        task = outbox.get(first.task_id)
        assert task.seed_record_ids == ["rec1", "rec2"]
        assert task.origin_run_ids == ["runA", "runB"]
        assert task.estimated_complexity == 9
        assert outbox.stats()["pending"] == 1

    def test_merged_seed_groups_union_record_ids(self, outbox):
        group = {"table_id": "tblA", "record_ids": ["rec1"], "field_ids": ["fldA"]}
        task_id = outbox.enqueue(task_input(seed_groups=[group]), now=T0)
        outbox.enqueue(task_input(seed_groups=[dict(group, record_ids=["rec2"])]), now=T0)
        assert outbox.get(task_id).seed_groups == [
            {"table_id": "tblA", "record_ids": ["rec1", "rec2"], "field_ids": ["fldA"]}
        ]

    def test_different_plan_new_task(self, outbox):
        first = outbox.enqueue(task_input(), now=T0)
        second = outbox.enqueue(task_input(steps=[step("fldY")]), now=T0)
        assert first != second

    def test_processing_task_not_merged(self, outbox):
        first = outbox.enqueue(task_input(), now=T0)
        outbox.claim("w1", now=T0)
        result = outbox.enqueue_or_merge(task_input(), now=T0)
        assert result.merged is False
        assert result.task_id != first

    def test_parked_tasks_never_merge(self, outbox):
        parked = outbox.enqueue(task_input(parked=True), now=T0)
        assert outbox.get(parked).is_parked
        fresh = outbox.enqueue_or_merge(task_input(), now=T0)
        assert fresh.merged is False
        assert outbox.enqueue_or_merge(task_input(), now=T0).task_id == fresh.task_id


class TestMergeSeedGroups:
    def test_groups_keyed_by_table_and_fields(self):
        merged = merge_seed_groups(
            [{"table_id": "tblA", "record_ids": ["rec1"], "field_ids": None}],
            [
                {"table_id": "tblA", "record_ids": ["rec2"], "field_ids": None},
                {"table_id": "tblA", "record_ids": ["rec3"], "field_ids": ["fldA"]},
            ],
        )
        assert merged == [
            {"table_id": "tblA", "record_ids": ["rec1", "rec2"], "field_ids": None},
            {"table_id": "tblA", "record_ids": ["rec3"], "field_ids": ["fldA"]},
        ]


# =============================================================================
# Claim
# =============================================================================


class TestClaim:
    def test_claim_oldest_first(self, outbox):
        older = outbox.enqueue(task_input(steps=[step("fldOld")]), now=T0)
        outbox.enqueue(task_input(steps=[step("fldNew")]), now=T0 + timedelta(seconds=1))
        task = outbox.claim("w1", now=T0 + timedelta(seconds=5))
        assert task.id == older
        assert task.status is TaskStatus.PROCESSING
        assert task.locked_by == "w1"
        assert task.attempts == 0

    def test_not_due_yet(self, outbox):
        outbox.enqueue(task_input(), now=T0 + timedelta(seconds=10))
        assert outbox.claim("w1", now=T0) is None
        assert outbox.claim("w1", now=T0 + timedelta(seconds=10)) is not None

    def test_claimed_task_not_claimed_twice(self, outbox):
        outbox.enqueue(task_input(), now=T0)
        assert outbox.claim("w1", now=T0) is not None
        assert outbox.claim("w2", now=T0) is None

    def test_claim_batch_respects_budget(self, outbox):
        for index in range(4):
            outbox.enqueue(task_input(steps=[step(f"fld{index}")], estimated_complexity=40), now=T0)
        claimed = outbox.claim_batch("w1", now=T0, limit=10, complexity_budget=100)
        assert len(claimed) == 3
        assert len(outbox.claim_batch("w1", now=T0, limit=10)) == 1

    def test_concurrent_claim_single_winner(self, file_db, settings):
        setup, _ = create_connection(file_db)
        ComputedUpdateOutbox(setup, settings).enqueue(task_input(), now=T0)
        setup.close()

        barrier = threading.Barrier(4)
        results: list = []
        lock = threading.Lock()

        def claimer(index: int) -> None:
            conn, _ = create_connection(file_db)
            try:
                outbox = ComputedUpdateOutbox(conn, settings)
                barrier.wait()
                task = outbox.claim(f"w{index}", now=T0)
                with lock:
                    results.append(task)
            finally:
                conn.close()

        threads = [threading.Thread(target=claimer, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        assert len(results) == 4
        assert sum(1 for r in results if r is not None) == 1


# =============================================================================
# Failure handling
# =============================================================================


class TestRetry:
    def test_backoff_then_dead_letter(self, outbox, dead_letters):
        task_id = outbox.enqueue(task_input(run_id="runA"), now=T0)
        now = T0
        expected_delays = [1, 2]
        for delay in expected_delays:
            task = outbox.claim("w1", now=now)
            assert outbox.mark_failed(task, "w1", RuntimeError("boom"), now=now) is False
            retried = outbox.get(task_id)
            assert retried.status is TaskStatus.PENDING
            assert retried.next_run_at == now + timedelta(seconds=delay)
            assert retried.last_error == "RuntimeError: boom"
            assert outbox.claim("w1", now=now + timedelta(seconds=delay) - timedelta(microseconds=1)) is None
            now += timedelta(seconds=delay)

        task = outbox.claim("w1", now=now)
        assert outbox.mark_failed(task, "w1", RuntimeError("boom"), trace="Traceback...", now=now) is True
        assert outbox.get(task_id) is None
        entry = dead_letters.get(task_id)
        assert entry.status is TaskStatus.FAILED
        assert entry.attempts == 3
        assert entry.trace_data == "Traceback..."
        assert entry.run_id == "runA"
        assert entry.failed_at == now

    def test_non_retryable_dead_letters_immediately(self, outbox, dead_letters):
        task_id = outbox.enqueue(task_input(), now=T0)
        task = outbox.claim("w1", now=T0)
        assert outbox.mark_failed(task, "w1", ValidationError("bad"), now=T0) is True
        assert dead_letters.get(task_id).attempts == 1

    def test_mark_failed_requires_lock(self, outbox):
        outbox.enqueue(task_input(), now=T0)
        task = outbox.claim("w1", now=T0)
        with pytest.raises(LockLostError):
            outbox.mark_failed(task, "w2", RuntimeError("boom"), now=T0)


class TestLockExpiry:
    def test_expired_lock_reclaimed(self, outbox):
        task_id = outbox.enqueue(task_input(), now=T0)
        original = outbox.claim("w1", now=T0)
        assert outbox.claim("w2", now=T0 + timedelta(seconds=30)) is None

        reclaimed = outbox.claim("w2", now=T0 + timedelta(seconds=61))
        assert reclaimed.id == task_id
        assert reclaimed.locked_by == "w2"
        assert reclaimed.attempts == 1
        assert reclaimed.last_error == "Lock expired (held by w1)"

        with pytest.raises(LockLostError):
            outbox.mark_done(original, "w1", now=T0 + timedelta(seconds=62))
        outbox.mark_done(reclaimed, "w2", now=T0 + timedelta(seconds=62))
        assert outbox.get(task_id).status is TaskStatus.DONE

    def test_repeated_expiry_dead_letters(self, outbox, dead_letters):
        task_id = outbox.enqueue(task_input(), now=T0)
        outbox.claim("w1", now=T0)
        outbox.claim("w2", now=T0 + timedelta(seconds=61))
        outbox.claim("w3", now=T0 + timedelta(seconds=122))
        assert outbox.claim("w4", now=T0 + timedelta(seconds=183)) is None
        entry = dead_letters.get(task_id)
        assert entry.attempts == 3
        assert entry.last_error == "Lock expired (held by w3)"

    def test_expiry_exhaustion_dead_letters_parked_successors(self, outbox, dead_letters):
        first, second = enqueue_chain(outbox)
        outbox.claim("w1", now=T0)
        outbox.claim("w2", now=T0 + timedelta(seconds=61))
        outbox.claim("w3", now=T0 + timedelta(seconds=122))
        assert outbox.claim("w4", now=T0 + timedelta(seconds=183)) is None

        assert dead_letters.get(first).last_error == "Lock expired (held by w3)"
        assert "Predecessor task" in dead_letters.get(second).last_error
        stats = outbox.stats()
        assert stats["parked"] == 0
        assert stats["dead_letter"] == 2


# =============================================================================
# Chained runs
# =============================================================================


def enqueue_chain(outbox, run_id="runC"):
    first = outbox.enqueue(
        task_input(
            run_id=run_id,
            steps=[step("fld1"), step("fld2", level=1)],
            run_total_steps=4,
            run_completed_steps_before=0,
        ),
        now=T0,
    )
    second = outbox.enqueue(
        task_input(
            run_id=run_id,
            steps=[step("fld3", level=2), step("fld4", level=3)],
            run_total_steps=4,
            run_completed_steps_before=2,
            parked=True,
        ),
        now=T0,
    )
    return first, second


class TestChaining:
    def test_successor_released_on_done(self, outbox):
        first, second = enqueue_chain(outbox)
        assert outbox.stats()["parked"] == 1

        task = outbox.claim("w1", now=T0)
        assert task.id == first
        assert outbox.claim("w1", now=T0) is None

        released = outbox.mark_done(task, "w1", dirty_stats={"steps_run": 2}, now=T0)
        assert released == second
        assert outbox.get(second).next_run_at == T0
        assert outbox.get(first).dirty_stats == {"steps_run": 2}
        assert outbox.claim("w1", now=T0).id == second

    def test_run_progress(self, outbox):
        first, _second = enqueue_chain(outbox)
        progress = outbox.run_progress("runC")
        assert (progress.completed_steps, progress.total_steps, progress.percent) == (0, 4, 0.0)
        assert not progress.is_complete

        outbox.mark_done(outbox.claim("w1", now=T0), "w1", now=T0)
        progress = outbox.run_progress("runC")
        assert progress.completed_steps == 2
        assert progress.percent == 50.0

        outbox.mark_done(outbox.claim("w1", now=T0), "w1", now=T0)
        progress = outbox.run_progress("runC")
        assert progress.completed_steps == 4
        assert progress.is_complete
        assert progress.done_tasks == 2

    def test_dead_letter_takes_parked_successors(self, outbox, dead_letters):
        first, second = enqueue_chain(outbox)
        task = outbox.claim("w1", now=T0)
        outbox.mark_failed(task, "w1", ValidationError("bad"), now=T0)
        assert dead_letters.count(run_id="runC") == 2
        assert "Predecessor task" in dead_letters.get(second).last_error
        assert outbox.run_progress("runC").dead_letters == 2

    def test_run_progress_unknown(self, outbox):
        with pytest.raises(NotFoundError):
            outbox.run_progress("runNope")

    def test_merged_run_reports_progress(self, outbox):
        outbox.enqueue(task_input(run_id="runA"), now=T0)
        outbox.enqueue(task_input(run_id="runB"), now=T0)
        assert outbox.run_progress("runB").pending_tasks == 1


# =============================================================================
# Inspection and housekeeping
# =============================================================================


class TestInspection:
    def test_list_filters(self, outbox):
        outbox.enqueue(task_input(run_id="runA"), now=T0)
        outbox.enqueue(task_input(run_id="runB", steps=[step("fldY")]), now=T0)
        outbox.claim("w1", now=T0)
        assert len(outbox.list()) == 2
        assert [t.run_id for t in outbox.list(status="processing")] == ["runA"]
        assert [t.run_id for t in outbox.list(run_id="runB")] == ["runB"]
        assert len(outbox.list(limit=1, offset=1)) == 1

    def test_stats(self, outbox):
        enqueue_chain(outbox)
        outbox.enqueue(task_input(steps=[step("fldZ")]), now=T0)
        outbox.claim("w1", now=T0)
        assert outbox.stats() == {"pending": 1, "processing": 1, "done": 0, "parked": 1, "dead_letter": 0}

    def test_purge_done(self, outbox):
        task_id = outbox.enqueue(task_input(), now=T0)
        outbox.mark_done(outbox.claim("w1", now=T0), "w1", now=T0)
        assert outbox.purge_done(timedelta(days=1), now=T0 + timedelta(hours=1)) == 0
        assert outbox.purge_done(timedelta(days=1), now=T0 + timedelta(days=2)) == 1
        assert outbox.get(task_id) is None

    def test_far_future_marker(self, outbox):
        parked = outbox.enqueue(task_input(parked=True), now=T0)
        assert outbox.get(parked).next_run_at == FAR_FUTURE
