"""
Session state machine.

The module-level reducers are pure: ``(slot, now) -> slot``.  ``SessionEngine``
loads a task, applies a reducer, persists the task and appends sync operations.
"""

import datetime
import logging
from dataclasses import replace

from timeslot_sync.clock import Clock
from timeslot_sync.clock import SystemClock
from timeslot_sync.db import StateDatabase
from timeslot_sync.models import SLOT_PROXIMITY_THRESHOLD
from timeslot_sync.models import InvalidTransition
from timeslot_sync.models import MergeWindowExpired
from timeslot_sync.models import OperationType
from timeslot_sync.models import SyncConfig
from timeslot_sync.queue import SyncQueue
from timeslot_sync.slot import Task
from timeslot_sync.slot import TaskStatus
from timeslot_sync.slot import TimeSlot

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------------- #
# Reducers                                                                      #
# ----------------------------------------------------------------------------- #


def start(slot: TimeSlot, now: datetime.datetime) -> TimeSlot:
    """First start, or resume within the merge window."""
    if slot.is_active:
        raise InvalidTransition(f"Slot {slot.id} is already running")

    if slot.session_start is None:
        return replace(
            slot,
            actual_start=now,
            session_start=now,
            actual_end=None,
            is_active=True,
            is_discarded=False,
        )

    if slot.can_merge_session(now):
        return replace(slot, actual_start=now, actual_end=None, is_active=True, is_discarded=False)

    raise MergeWindowExpired(
        f"Slot {slot.id} was stopped at {slot.last_stop_time.isoformat()}; "
        f"the merge window has closed, start a new slot instead"
    )


def stop(slot: TimeSlot, now: datetime.datetime) -> TimeSlot:
    """Fold the current segment into the accumulated total and go inactive."""
    if not slot.is_active:
        raise InvalidTransition(f"Slot {slot.id} is not running")

    elapsed = 0
    if slot.actual_start is not None:
        elapsed = max(int((now - slot.actual_start).total_seconds()), 0)

    return replace(
        slot,
        accumulated_seconds=slot.accumulated_seconds + elapsed,
        actual_end=now,
        last_stop_time=now,
        is_active=False,
    )


def discard(slot: TimeSlot) -> TimeSlot:
    return replace(
        slot,
        actual_start=None,
        actual_end=None,
        session_start=None,
        last_stop_time=None,
        accumulated_seconds=0,
        is_active=False,
        is_discarded=True,
        has_synced_to_calendar=False,
    )


def reset(slot: TimeSlot) -> TimeSlot:
    """Like discard, but the slot stays scheduled and keeps its calendar linkage."""
    return replace(
        slot,
        actual_start=None,
        actual_end=None,
        session_start=None,
        last_stop_time=None,
        accumulated_seconds=0,
        is_active=False,
        is_discarded=False,
    )


def continue_overtime(slot: TimeSlot) -> TimeSlot:
    return replace(slot, was_manual_continue=True, auto_end=False)


def reschedule(slot: TimeSlot, start_at: datetime.datetime, end_at: datetime.datetime) -> TimeSlot:
    if slot.is_active:
        raise InvalidTransition(f"Slot {slot.id} is running and cannot be rescheduled")
    if end_at <= start_at:
        raise ValueError("Slot end must be after its start")

    return replace(
        slot,
        planned_start=start_at,
        planned_end=end_at,
        actual_start=None,
        actual_end=None,
        session_start=None,
        last_stop_time=None,
        accumulated_seconds=0,
        is_discarded=False,
        has_synced_to_calendar=False,
        was_manual_continue=False,
        auto_end=True,
    )


def apply_remote_times(slot: TimeSlot, start_at: datetime.datetime, end_at: datetime.datetime) -> TimeSlot:
    """Adopt an externally edited event's times as the planned bounds."""
    return replace(slot, planned_start=start_at, planned_end=end_at)


# ----------------------------------------------------------------------------- #
# Engine                                                                        #
# ----------------------------------------------------------------------------- #


class SessionEngine:
    """Applies session transitions to stored tasks and queues calendar work."""

    def __init__(
        self,
        state_db: StateDatabase,
        queue: SyncQueue,
        clock: Clock | None = None,
        config: SyncConfig | None = None,
    ):
        self.state_db = state_db
        self.queue = queue
        self.clock = clock or SystemClock()
        self.config = config
        self._last_overtime_push: dict[str, datetime.datetime] = {}

    @property
    def overtime_refresh(self) -> datetime.timedelta:
        if self.config is not None:
            return self.config.overtime_refresh
        return datetime.timedelta(minutes=5)

    # ------------------------------------------------------------------ #
    # Tasks and slots                                                      #
    # ------------------------------------------------------------------ #

    def add_task(
        self,
        title: str,
        estimated_minutes: int,
        scheduled_date: datetime.date | None = None,
        color_tag: str | None = None,
    ) -> Task:
        if estimated_minutes <= 0:
            raise ValueError("Estimated minutes must be positive")
        now = self.clock.now()
        task = Task(
            title=title,
            estimated_minutes=estimated_minutes,
            scheduled_date=scheduled_date or now.date(),
            created_at=now,
            color_tag=color_tag,
        )
        self.state_db.put_task(task)
        logger.info(f"Added task '{title}' ({estimated_minutes} min)")
        return task

    def add_slot(self, task_id: str, start_at: datetime.datetime, end_at: datetime.datetime) -> TimeSlot:
        """Schedule a block. No calendar event is created until the day is committed."""
        if end_at <= start_at:
            raise ValueError("Slot end must be after its start")
        task = self.state_db.get_task(task_id)
        slot = TimeSlot(planned_start=start_at, planned_end=end_at)
        self.state_db.put_task(task.add_slot(slot))
        logger.debug(f"Added slot {slot.id} to task {task_id}")
        return slot

    def remove_slot(self, task_id: str, slot_id: str):
        task = self.state_db.get_task(task_id)
        slot = task.get_slot(slot_id)
        if slot.is_active:
            raise InvalidTransition(f"Slot {slot_id} is running; stop it first")

        # Imported events are only unlinked, never deleted
        if slot.calendar_event_id is not None:
            self.queue.enqueue_delete(task_id, slot_id, slot.calendar_event_id)

        self.state_db.put_task(task.remove_slot(slot_id))
        logger.info(f"Removed slot {slot_id} from task '{task.title}'")

    # ------------------------------------------------------------------ #
    # Timer                                                                #
    # ------------------------------------------------------------------ #

    def start_slot(self, task_id: str, slot_id: str) -> TimeSlot:
        now = self.clock.now()
        # A rejected start must leave other running timers untouched
        started = start(self.state_db.get_task(task_id).get_slot(slot_id), now)
        self.stop_active(exclude_slot_id=slot_id)

        # Reload: stopping may have rewritten another slot of this task
        task = self.state_db.get_task(task_id)
        task = replace(task.with_slot(started), status=TaskStatus.IN_PROGRESS)
        self.state_db.put_task(task)
        logger.info(f"Started '{task.title}' slot {slot_id}")

        if started.is_pre_scheduled:
            # Event start moves to the session start
            self.queue.enqueue_update(task, started, started.event_ref)
        return started

    def start_task(self, task_id: str, preferred_slot_id: str | None = None) -> TimeSlot:
        """
        Smart start.

        1. Resume the most recently stopped slot while its merge window is open,
           extending its planned end when that is already past.
        2. Otherwise start the preferred (or nearest) unstarted slot if its
           planned start is within 30 minutes of now.
        3. Otherwise create an ad-hoc slot from now.
        """
        self.stop_active()

        now = self.clock.now()
        task = self.state_db.get_task(task_id)

        last = task.last_stopped_slot
        if last is not None and last.can_merge_session(now):
            if last.planned_end < now:
                minutes = task.remaining_minutes(now) or 30
                extended = replace(
                    last,
                    planned_end=now + datetime.timedelta(minutes=minutes),
                    was_manual_continue=True,
                )
                self.state_db.put_task(task.with_slot(extended))
            return self.start_slot(task_id, last.id)

        candidate = self._nearby_slot(task, now, preferred_slot_id)
        if candidate is not None:
            return self.start_slot(task_id, candidate.id)

        minutes = task.remaining_minutes(now) or task.estimated_minutes
        slot = TimeSlot(planned_start=now, planned_end=now + datetime.timedelta(minutes=minutes))
        self.state_db.put_task(task.add_slot(slot))
        logger.debug(f"Created ad-hoc slot {slot.id} for '{task.title}' ({minutes} min)")
        return self.start_slot(task_id, slot.id)

    def _nearby_slot(
        self, task: Task, now: datetime.datetime, preferred_slot_id: str | None
    ) -> TimeSlot | None:
        if preferred_slot_id is not None:
            candidates = [task.get_slot(preferred_slot_id)]
        else:
            candidates = sorted(
                (s for s in task.slots if not s.has_started and not s.is_discarded),
                key=lambda s: abs(s.planned_start - now),
            )
        for slot in candidates[:1]:
            if not slot.has_started and abs(slot.planned_start - now) <= SLOT_PROXIMITY_THRESHOLD:
                return slot
        return None

    def stop_slot(self, task_id: str, slot_id: str, force_keep: bool = False) -> TimeSlot:
        """Stop a running slot, applying the commitment threshold."""
        now = self.clock.now()
        task = self.state_db.get_task(task_id)
        slot = task.get_slot(slot_id)
        if not slot.is_active:
            raise InvalidTransition(f"Slot {slot_id} is not running")

        worked = slot.actual_duration(now)
        below_threshold = worked < task.commitment_threshold and not force_keep

        if below_threshold and not slot.is_pre_scheduled:
            result = discard(slot)
            self.state_db.put_task(task.with_slot(result))
            logger.info(
                f"Discarded '{task.title}' session ({int(worked.total_seconds())}s "
                f"below {int(task.commitment_threshold.total_seconds() // 60)} min threshold)"
            )
            return result

        if below_threshold:
            result = reset(slot)
            task = task.with_slot(result)
            self.state_db.put_task(task)
            self.queue.enqueue_update(
                task, result, result.event_ref, start=result.planned_start, end=result.planned_end
            )
            logger.info(f"Reset '{task.title}' slot {slot_id} to its planned time")
            return result

        result = stop(slot, now)
        task = task.with_slot(result)
        self.state_db.put_task(task)

        if result.event_ref is not None:
            self.queue.enqueue_update(
                task, result, result.event_ref, start=result.session_start, end=result.actual_end
            )
        elif self.queue.has_pending(slot_id, OperationType.CREATE):
            # Ref is resolved from the slot once the create has applied
            self.queue.enqueue_update(task, result, None)
        else:
            self.queue.enqueue_create(
                task, result, start=result.session_start, end=result.actual_end
            )

        logger.info(
            f"Stopped '{task.title}' after {int(result.actual_duration(now).total_seconds() // 60)} min"
        )
        return result

    def stop_active(self, exclude_slot_id: str | None = None) -> list[TimeSlot]:
        """Stop every running slot, returning the stopped (or discarded) slots."""
        stopped = []
        for task in self.state_db.get_all_tasks():
            for slot in task.slots:
                if slot.is_active and slot.id != exclude_slot_id:
                    stopped.append(self.stop_slot(task.id, slot.id))
        return stopped

    def discard_slot(self, task_id: str, slot_id: str) -> TimeSlot:
        task = self.state_db.get_task(task_id)
        slot = task.get_slot(slot_id)
        result = discard(slot)
        if slot.calendar_event_id is not None:
            result = replace(result, calendar_event_id=None)
        self.state_db.put_task(task.with_slot(result))

        if slot.calendar_event_id is not None:
            self.queue.enqueue_delete(task_id, slot_id, slot.calendar_event_id)
        logger.info(f"Discarded slot {slot_id} of '{task.title}'")
        return result

    def continue_slot(self, task_id: str, slot_id: str) -> TimeSlot:
        """Keep a running slot going past its planned end."""
        task = self.state_db.get_task(task_id)
        result = continue_overtime(task.get_slot(slot_id))
        self.state_db.put_task(task.with_slot(result))
        return result

    def reschedule_slot(
        self,
        task_id: str,
        slot_id: str,
        start_at: datetime.datetime,
        duration: datetime.timedelta | None = None,
    ) -> TimeSlot:
        task = self.state_db.get_task(task_id)
        slot = task.get_slot(slot_id)
        result = reschedule(slot, start_at, start_at + (duration or slot.planned_duration))
        task = task.with_slot(result)
        self.state_db.put_task(task)

        if result.event_ref is not None:
            self.queue.enqueue_update(
                task, result, result.event_ref, start=result.planned_start, end=result.planned_end
            )
        logger.info(f"Rescheduled slot {slot_id} to {result.planned_start.isoformat()}")
        return result

    # ------------------------------------------------------------------ #
    # Calendar commitments                                                 #
    # ------------------------------------------------------------------ #

    def commit_day(self, task_ids: list[str]) -> int:
        """Queue a calendar create for every eligible slot of the committed tasks."""
        queued = 0
        for task_id in task_ids:
            task = self.state_db.get_task(task_id)
            for slot in task.slots:
                if (
                    slot.is_discarded
                    or slot.has_started
                    or slot.is_pre_scheduled
                    or slot.has_synced_to_calendar
                    or self.queue.has_pending(slot.id, OperationType.CREATE)
                ):
                    continue
                self.queue.enqueue_create(
                    task, slot, start=slot.planned_start, end=slot.planned_end
                )
                queued += 1
        logger.info(f"Committed {len(task_ids)} task(s), queued {queued} calendar event(s)")
        return queued

    def refresh_overtime(self) -> int:
        """Queue a live update for active pre-scheduled slots running past their planned end."""
        now = self.clock.now()
        queued = 0
        for task in self.state_db.get_all_tasks():
            for slot in task.slots:
                if not (slot.is_active and slot.is_pre_scheduled and now > slot.planned_end):
                    continue
                if self.queue.has_pending(slot.id, OperationType.UPDATE, live_only=True):
                    continue
                last_push = self._last_overtime_push.get(slot.id)
                if last_push is not None and now - last_push < self.overtime_refresh:
                    continue
                self.queue.enqueue_update(task, slot, slot.event_ref)
                self._last_overtime_push[slot.id] = now
                queued += 1
        if queued:
            logger.debug(f"Queued {queued} overtime update(s)")
        return queued
