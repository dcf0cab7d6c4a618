"""
Durable FIFO log of pending calendar mutations.
"""

import datetime
import logging
import sqlite3

from timeslot_sync.clock import Clock
from timeslot_sync.clock import SystemClock
from timeslot_sync.db import StateDatabase
from timeslot_sync.models import MAX_RETRIES
from timeslot_sync.models import OperationType
from timeslot_sync.models import SyncOperation
from timeslot_sync.slot import Task
from timeslot_sync.slot import TimeSlot

logger = logging.getLogger(__name__)


def _dt(value: str | None) -> datetime.datetime | None:
    return datetime.datetime.fromisoformat(value) if value else None


class SyncQueue:
    """Append-only queue of SyncOperations backed by the state database.

    Entries are applied in ``seq`` order.  An entry whose retry count reached
    ``max_retries`` is a dead letter: it stays in the table, is never handed out
    by ``pending()`` and only leaves through an explicit ``drop()``.
    """

    def __init__(self, state_db: StateDatabase, clock: Clock | None = None, max_retries: int = MAX_RETRIES):
        self.state_db = state_db
        self.clock = clock or SystemClock()
        self.max_retries = max_retries

    @staticmethod
    def _from_row(row: sqlite3.Row) -> SyncOperation:
        return SyncOperation(
            id=row["id"],
            seq=row["seq"],
            type=OperationType(row["op_type"]),
            task_id=row["task_id"],
            slot_id=row["slot_id"],
            external_ref=row["external_ref"],
            title=row["title"],
            start=_dt(row["start_time"]),
            end=_dt(row["end_time"]),
            color_tag=row["color_tag"],
            created_at=_dt(row["created_at"]),
            retry_count=row["retry_count"],
            last_error=row["last_error"],
            max_retries=row["max_retries"],
        )

    # ------------------------------------------------------------------ #
    # Appending                                                            #
    # ------------------------------------------------------------------ #

    def enqueue(self, op: SyncOperation) -> SyncOperation:
        op.seq = self.state_db.insert_operation(op)
        logger.debug(
            f"Queued {op.type.value} #{op.seq} for task {op.task_id} slot {op.slot_id}"
            + (" (live)" if op.is_live and op.type != OperationType.DELETE else "")
        )
        return op

    def enqueue_create(
        self,
        task: Task,
        slot: TimeSlot,
        start: datetime.datetime | None = None,
        end: datetime.datetime | None = None,
    ) -> SyncOperation:
        return self.enqueue(
            SyncOperation(
                type=OperationType.CREATE,
                task_id=task.id,
                slot_id=slot.id,
                title=task.title,
                start=start,
                end=end,
                color_tag=task.color_tag,
                created_at=self.clock.now(),
                max_retries=self.max_retries,
            )
        )

    def enqueue_update(
        self,
        task: Task,
        slot: TimeSlot,
        external_ref: str | None,
        start: datetime.datetime | None = None,
        end: datetime.datetime | None = None,
    ) -> SyncOperation:
        """Queue an update; leave start/end unset for a live calendar-window snapshot."""
        return self.enqueue(
            SyncOperation(
                type=OperationType.UPDATE,
                task_id=task.id,
                slot_id=slot.id,
                external_ref=external_ref,
                title=task.title,
                start=start,
                end=end,
                color_tag=task.color_tag,
                created_at=self.clock.now(),
                max_retries=self.max_retries,
            )
        )

    def enqueue_delete(self, task_id: str, slot_id: str | None, external_ref: str) -> SyncOperation:
        return self.enqueue(
            SyncOperation(
                type=OperationType.DELETE,
                task_id=task_id,
                slot_id=slot_id,
                external_ref=external_ref,
                created_at=self.clock.now(),
                max_retries=self.max_retries,
            )
        )

    # ------------------------------------------------------------------ #
    # Reading                                                              #
    # ------------------------------------------------------------------ #

    def all(self) -> list[SyncOperation]:
        return [self._from_row(row) for row in self.state_db.get_operations()]

    def pending(self) -> list[SyncOperation]:
        """Entries still eligible for delivery, in FIFO order."""
        return [op for op in self.all() if not op.has_exceeded_retries]

    def dead_letters(self) -> list[SyncOperation]:
        return [op for op in self.all() if op.has_exceeded_retries]

    def count(self) -> int:
        return self.state_db.count_operations()

    def for_slot(self, slot_id: str) -> list[SyncOperation]:
        """Every queued entry for a slot, dead letters included."""
        return [op for op in self.all() if op.slot_id == slot_id]

    def has_pending(self, slot_id: str, op_type: OperationType, live_only: bool = False) -> bool:
        for op in self.pending():
            if op.slot_id != slot_id or op.type != op_type:
                continue
            if live_only and not op.is_live:
                continue
            return True
        return False

    # ------------------------------------------------------------------ #
    # Delivery bookkeeping                                                 #
    # ------------------------------------------------------------------ #

    def claim(self, op: SyncOperation) -> bool:
        return self.state_db.claim_operation(op.id, self.clock.now())

    def release(self, op: SyncOperation):
        self.state_db.release_operation(op.id)

    def release_stale_claims(self, older_than: datetime.timedelta) -> int:
        released = self.state_db.release_stale_claims(self.clock.now() - older_than)
        if released:
            logger.warning(f"Released {released} stale in-flight claim(s)")
        return released

    def record_failure(self, op: SyncOperation, error: str):
        """Count a failed delivery; the entry stays queued and its claim is released."""
        op.record_failure(error)
        self.state_db.update_operation_failure(op.id, op.retry_count, op.last_error)
        if op.has_exceeded_retries:
            logger.error(
                f"Operation {op.id} ({op.type.value}) exceeded {op.max_retries} retries: {error}"
            )

    def complete(self, op: SyncOperation):
        self.state_db.delete_operation(op.id)

    def drop(self, op_id: str) -> bool:
        """Remove an entry regardless of state (used for dead letters)."""
        dropped = self.state_db.delete_operation(op_id)
        if dropped:
            logger.info(f"Dropped queued operation {op_id}")
        return dropped
