"""
Tests for the durable sync queue.
"""

import datetime

from tests.conftest import at
from timeslot_sync.models import OperationType
from timeslot_sync.queue import SyncQueue
from timeslot_sync.slot import Task
from timeslot_sync.slot import TimeSlot


def _task_and_slot():
    slot = TimeSlot(planned_start=at(9), planned_end=at(10))
    task = Task(
        title="Review",
        estimated_minutes=60,
        scheduled_date=at(9).date(),
        created_at=at(8),
        color_tag="#ff0000",
        slots=(slot,),
    )
    return task, slot


def test_fifo_order_and_round_trip(queue):
    task, slot = _task_and_slot()
    create = queue.enqueue_create(task, slot, start=at(9), end=at(10))
    update = queue.enqueue_update(task, slot, None)
    delete = queue.enqueue_delete(task.id, slot.id, "evt-9")

    ops = queue.pending()
    assert [op.id for op in ops] == [create.id, update.id, delete.id]
    assert ops[0].seq < ops[1].seq < ops[2].seq
    assert ops[0].type == OperationType.CREATE
    assert (ops[0].start, ops[0].end) == (at(9), at(10))
    assert ops[0].color_tag == "#ff0000"
    assert ops[0].title == "Review"
    assert ops[1].is_live
    assert ops[2].external_ref == "evt-9"


def test_queue_survives_reopen(state_db, clock):
    task, slot = _task_and_slot()
    SyncQueue(state_db, clock).enqueue_create(task, slot, start=at(9), end=at(10))
    state_db.close()

    state_db.connect()
    (op,) = SyncQueue(state_db, clock).pending()
    assert op.slot_id == slot.id
    assert op.created_at == at(9)


def test_failures_become_dead_letters(state_db, clock):
    queue = SyncQueue(state_db, clock, max_retries=2)
    task, slot = _task_and_slot()
    op = queue.enqueue_create(task, slot)

    queue.record_failure(op, "boom")
    assert queue.pending()[0].retry_count == 1
    assert queue.dead_letters() == []

    queue.record_failure(op, "boom again")
    assert queue.pending() == []
    (dead,) = queue.dead_letters()
    assert dead.last_error == "boom again"
    # Dead letters stay visible per slot until dropped
    assert queue.for_slot(slot.id)[0].id == op.id
    assert queue.count() == 1

    assert queue.drop(op.id)
    assert queue.count() == 0
    assert not queue.drop(op.id)


def test_has_pending_filters_by_type_and_liveness(queue):
    task, slot = _task_and_slot()
    queue.enqueue_update(task, slot, "evt-1", start=at(9), end=at(10))

    assert queue.has_pending(slot.id, OperationType.UPDATE)
    assert not queue.has_pending(slot.id, OperationType.UPDATE, live_only=True)
    assert not queue.has_pending(slot.id, OperationType.CREATE)
    assert not queue.has_pending("other-slot", OperationType.UPDATE)


def test_claim_is_exclusive(queue, clock):
    task, slot = _task_and_slot()
    op = queue.enqueue_create(task, slot)

    assert queue.claim(op)
    assert not queue.claim(op)
    queue.release(op)
    assert queue.claim(op)


def test_stale_claims_are_released(queue, clock):
    task, slot = _task_and_slot()
    op = queue.enqueue_create(task, slot)
    queue.claim(op)

    clock.advance(minutes=5)
    assert queue.release_stale_claims(datetime.timedelta(minutes=10)) == 0
    clock.advance(minutes=6)
    assert queue.release_stale_claims(datetime.timedelta(minutes=10)) == 1
    assert queue.claim(op)


def test_complete_removes_entry(queue):
    task, slot = _task_and_slot()
    op = queue.enqueue_delete(task.id, slot.id, "evt-1")
    queue.complete(op)
    assert queue.all() == []
