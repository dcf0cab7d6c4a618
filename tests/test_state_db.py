"""
Unit tests for StateDatabase: task/slot persistence, event lookups, queue row
claims and sync metadata.
"""

from dataclasses import replace

import pytest

from tests.conftest import T0
from tests.conftest import at
from timeslot_sync.db import StateDatabase
from timeslot_sync.models import OperationType
from timeslot_sync.models import RecordNotFound
from timeslot_sync.models import SyncOperation
from timeslot_sync.slot import Task
from timeslot_sync.slot import TaskStatus
from timeslot_sync.slot import TimeSlot


def _task(title="Write docs", slots=(), **kwargs) -> Task:
    return Task(
        title=title,
        estimated_minutes=90,
        scheduled_date=T0.date(),
        created_at=T0,
        slots=tuple(slots),
        **kwargs,
    )


class TestTasks:
    def test_round_trip_preserves_every_field(self, state_db):
        slot = TimeSlot(
            planned_start=at(9),
            planned_end=at(10),
            actual_start=at(9, 5),
            actual_end=at(9, 50),
            session_start=at(9, 5),
            last_stop_time=at(9, 50),
            accumulated_seconds=2700,
            has_synced_to_calendar=True,
            was_manual_continue=True,
            auto_end=False,
            calendar_event_id="evt-1",
        )
        task = _task(slots=[slot], color_tag="#336699", status=TaskStatus.IN_PROGRESS)
        state_db.put_task(task)

        assert state_db.get_task(task.id) == task

    def test_slot_order_is_kept(self, state_db):
        slots = [TimeSlot(planned_start=at(h), planned_end=at(h, 30)) for h in (14, 9, 11)]
        task = _task(slots=slots)
        state_db.put_task(task)

        assert [s.id for s in state_db.get_task(task.id).slots] == [s.id for s in slots]

    def test_put_replaces_slots(self, state_db):
        first = TimeSlot(planned_start=at(9), planned_end=at(10))
        task = _task(slots=[first])
        state_db.put_task(task)

        second = TimeSlot(planned_start=at(13), planned_end=at(14))
        state_db.put_task(replace(task, title="Renamed", slots=(second,)))

        stored = state_db.get_task(task.id)
        assert stored.title == "Renamed"
        assert [s.id for s in stored.slots] == [second.id]
        assert state_db.find_slot(first.id) is None

    def test_missing_task(self, state_db):
        assert state_db.find_task("nope") is None
        with pytest.raises(RecordNotFound):
            state_db.get_task("nope")

    def test_tasks_for_date(self, state_db):
        today = _task("Today")
        tomorrow = replace(_task("Tomorrow"), scheduled_date=at(9).date().replace(day=3))
        state_db.put_task(today)
        state_db.put_task(tomorrow)

        assert [t.title for t in state_db.get_tasks_for_date(T0.date())] == ["Today"]
        assert len(state_db.get_all_tasks()) == 2

    def test_delete_task_cascades_to_slots(self, state_db):
        slot = TimeSlot(planned_start=at(9), planned_end=at(10))
        task = _task(slots=[slot])
        state_db.put_task(task)
        state_db.delete_task(task.id)

        assert state_db.find_task(task.id) is None
        assert state_db.find_slot(slot.id) is None

    def test_state_survives_reopen(self, db_path):
        task = _task(slots=[TimeSlot(planned_start=at(9), planned_end=at(10))])
        with StateDatabase(db_path) as db:
            db.put_task(task)
        with StateDatabase(db_path) as db:
            assert db.get_task(task.id) == task


class TestSlotLookup:
    def test_find_slot_returns_owner(self, state_db):
        slot = TimeSlot(planned_start=at(9), planned_end=at(10))
        task = _task(slots=[slot])
        state_db.put_task(task)

        owner, found = state_db.find_slot(slot.id)
        assert owner.id == task.id
        assert found == slot

    def test_find_by_owned_or_imported_event(self, state_db):
        owned = TimeSlot(planned_start=at(9), planned_end=at(10), calendar_event_id="evt-1")
        imported = TimeSlot(planned_start=at(11), planned_end=at(12), external_event_id="ext-1")
        state_db.put_task(_task(slots=[owned, imported]))

        assert state_db.find_slot_by_event_id("evt-1")[1].id == owned.id
        assert state_db.find_slot_by_event_id("ext-1")[1].id == imported.id
        assert state_db.find_slot_by_event_id("unknown") is None


class TestQueueRows:
    def _op(self, **kwargs) -> SyncOperation:
        return SyncOperation(type=OperationType.DELETE, task_id="t1", created_at=T0, external_ref="evt-1", **kwargs)

    def test_sequence_numbers_increase(self, state_db):
        first = state_db.insert_operation(self._op())
        second = state_db.insert_operation(self._op())
        assert second > first
        assert [row["seq"] for row in state_db.get_operations()] == [first, second]

    def test_claim_is_compare_and_set(self, state_db):
        op = self._op()
        state_db.insert_operation(op)

        assert state_db.claim_operation(op.id, at(9))
        assert not state_db.claim_operation(op.id, at(9, 1))
        state_db.release_operation(op.id)
        assert state_db.claim_operation(op.id, at(9, 2))

    def test_failure_update_releases_claim(self, state_db):
        op = self._op()
        state_db.insert_operation(op)
        state_db.claim_operation(op.id, at(9))
        state_db.update_operation_failure(op.id, 1, "offline")

        row = state_db.get_operation(op.id)
        assert row["retry_count"] == 1
        assert row["last_error"] == "offline"
        assert row["in_flight"] == 0

    def test_release_stale_claims_uses_cutoff(self, state_db):
        old, fresh = self._op(), self._op()
        state_db.insert_operation(old)
        state_db.insert_operation(fresh)
        state_db.claim_operation(old.id, at(9))
        state_db.claim_operation(fresh.id, at(9, 30))

        assert state_db.release_stale_claims(at(9, 15)) == 1
        assert state_db.get_operation(old.id)["in_flight"] == 0
        assert state_db.get_operation(fresh.id)["in_flight"] == 1

    def test_delete_reports_whether_row_existed(self, state_db):
        op = self._op()
        state_db.insert_operation(op)
        assert state_db.delete_operation(op.id)
        assert not state_db.delete_operation(op.id)
        assert state_db.count_operations() == 0


class TestMetadata:
    def test_set_get_delete(self, state_db):
        assert state_db.get_meta("sync_token") is None
        state_db.set_meta("sync_token", "a")
        state_db.set_meta("sync_token", "b")
        assert state_db.get_meta("sync_token") == "b"
        state_db.delete_meta("sync_token")
        assert state_db.get_meta("sync_token") is None

    def test_status_summary(self, state_db):
        active = TimeSlot(planned_start=at(9), planned_end=at(10), is_active=True, actual_start=at(9))
        linked = TimeSlot(planned_start=at(11), planned_end=at(12), calendar_event_id="evt-1")
        state_db.put_task(_task(slots=[active, linked]))
        dead = SyncOperation(
            type=OperationType.DELETE,
            task_id="t1",
            created_at=T0,
            external_ref="evt-9",
            retry_count=5,
        )
        state_db.insert_operation(dead)
        state_db.set_meta("sync_token", "tok")

        summary = state_db.status_summary()
        assert summary["tasks"] == 1
        assert summary["slots"] == 2
        assert summary["active_slots"] == 1
        assert summary["linked_slots"] == 1
        assert summary["queued"] == 1
        assert summary["dead_letters"] == 1
        assert summary["has_sync_token"] is True
        assert summary["last_sync_at"] is None
