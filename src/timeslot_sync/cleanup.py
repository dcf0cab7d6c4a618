"""
Missed-slot sweep: remove calendar events for slots that were never started.
"""

import datetime
import logging
from dataclasses import replace

from timeslot_sync.clock import Clock
from timeslot_sync.clock import SystemClock
from timeslot_sync.db import StateDatabase
from timeslot_sync.models import SESSION_MERGE_THRESHOLD
from timeslot_sync.queue import SyncQueue
from timeslot_sync.session import discard
from timeslot_sync.slot import DisplayStatus
from timeslot_sync.slot import Task
from timeslot_sync.slot import TimeSlot

logger = logging.getLogger(__name__)


def missed_slots(task: Task, now: datetime.datetime) -> list[TimeSlot]:
    return [s for s in task.slots if s.display_status(now) == DisplayStatus.MISSED]


def _is_abandoned(slot: TimeSlot, now: datetime.datetime) -> bool:
    """Past the grace period, never touched, and carrying an event we own."""
    return (
        now > slot.planned_end + SESSION_MERGE_THRESHOLD
        and slot.session_start is None
        and slot.accumulated_seconds == 0
        and not slot.is_discarded
        and slot.external_event_id is None
        and slot.calendar_event_id is not None
    )


class CleanupSweep:
    def __init__(
        self,
        state_db: StateDatabase,
        queue: SyncQueue,
        clock: Clock | None = None,
        dry_run: bool = False,
    ):
        self.state_db = state_db
        self.queue = queue
        self.clock = clock or SystemClock()
        self.dry_run = dry_run

    def run(self) -> int:
        """Queue deletes for abandoned slots and mark them discarded. Returns the count."""
        now = self.clock.now()
        cleaned = 0
        for task in self.state_db.get_all_tasks():
            updated = task
            for slot in task.slots:
                if not _is_abandoned(slot, now):
                    continue
                if self.dry_run:
                    logger.info(
                        f"[DRY RUN] Would remove missed slot of '{task.title}' "
                        f"(event {slot.calendar_event_id})"
                    )
                    cleaned += 1
                    continue
                self.queue.enqueue_delete(task.id, slot.id, slot.calendar_event_id)
                updated = updated.with_slot(replace(discard(slot), calendar_event_id=None))
                cleaned += 1
                logger.info(f"Missed slot of '{task.title}' at {slot.planned_start:%H:%M}; event removed")
            if updated is not task:
                self.state_db.put_task(updated)
        return cleaned
