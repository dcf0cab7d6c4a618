"""
Pull phase: fetch remote changes and fold them into local state.
"""

import datetime
from dataclasses import replace
from typing import Protocol

from timeslot_sync.calendar import CalendarCapability
from timeslot_sync.clock import Clock
from timeslot_sync.db import StateDatabase
from timeslot_sync.models import DRIFT_TOLERANCE
from timeslot_sync.models import CalendarEvent
from timeslot_sync.models import SyncConfig
from timeslot_sync.models import SyncReport
from timeslot_sync.models import TokenExpired
from timeslot_sync.queue import SyncQueue
from timeslot_sync.session import apply_remote_times
from timeslot_sync.slot import Task
from timeslot_sync.slot import TimeSlot
from timeslot_sync.sync.utils import format_window
from timeslot_sync.sync.utils import within_tolerance

SYNC_TOKEN_KEY = "sync_token"


class ConflictPolicy(Protocol):
    """Decides what happens when a linked event was moved outside this system."""

    def resolve(self, task: Task, slot: TimeSlot, event: CalendarEvent) -> TimeSlot | None:
        """Return the slot to store, or None to keep local state and report a conflict."""
        ...


class LastWriterWinsImport:
    """Adopt the remote event's times as the slot's planned bounds."""

    def resolve(self, task: Task, slot: TimeSlot, event: CalendarEvent) -> TimeSlot | None:
        return apply_remote_times(slot, event.start, event.end)


class KeepLocal:
    """Never touch local state; every external edit is reported as a conflict."""

    def resolve(self, task: Task, slot: TimeSlot, event: CalendarEvent) -> TimeSlot | None:
        return None


def _process_remote_change(
    config: SyncConfig,
    report: SyncReport,
    logger,
    event: CalendarEvent,
    state_db: StateDatabase,
    queue: SyncQueue,
    policy: ConflictPolicy,
    now: datetime.datetime,
):
    found = state_db.find_slot_by_event_id(event.id)
    if found is None:
        return  # Not linked to any slot
    task, slot = found

    if queue.for_slot(slot.id):
        logger.debug(f"Slot {slot.id} has queued operations; ignoring remote copy of {event.id}")
        return

    remote = (event.start, event.end)
    # Our own writes: the live window, or the session pushed on the last stop
    for known in (slot.calendar_window(now), slot.recorded_window):
        if known is not None and within_tolerance(remote, known, DRIFT_TOLERANCE):
            return
    if not slot.drifted_from(event.start, event.end):
        return

    local = format_window(slot.planned_start, slot.planned_end)
    theirs = format_window(event.start, event.end)

    if config.dry_run:
        logger.info(f"[DRY RUN] Would reconcile '{task.title}': local {local}, remote {theirs}")
        return

    resolved = policy.resolve(task, slot, event)
    if resolved is None:
        report.conflicts_reported += 1
        report.conflict_details.append(f"'{task.title}': kept local {local}, remote is {theirs}")
        logger.warning(f"Conflict on '{task.title}': local {local}, remote {theirs}")
        return

    state_db.put_task(task.with_slot(resolved))
    report.conflicts_resolved += 1
    report.pulled_updates += 1
    report.conflict_details.append(f"'{task.title}': {local} -> {theirs}")
    logger.info(f"Adopted remote times for '{task.title}': {local} -> {theirs}")


def _process_remote_delete(
    config: SyncConfig,
    report: SyncReport,
    logger,
    event_id: str,
    state_db: StateDatabase,
):
    found = state_db.find_slot_by_event_id(event_id)
    if found is None:
        return
    task, slot = found

    if config.dry_run:
        logger.info(f"[DRY RUN] Would unlink slot {slot.id} from deleted event {event_id}")
        return

    if slot.calendar_event_id == event_id:
        logger.info(f"Event {event_id} was deleted remotely; clearing it from slot {slot.id}")
        state_db.put_task(task.with_slot(_unlink(slot, owned=True)))
    elif slot.is_active:
        # Keep the running timer; only drop the link to the imported event
        logger.info(f"Imported event {event_id} was deleted; unlinking active slot {slot.id}")
        state_db.put_task(task.with_slot(_unlink(slot, owned=False)))
    else:
        logger.info(f"Imported event {event_id} was deleted; removing slot {slot.id}")
        state_db.put_task(task.remove_slot(slot.id))
    report.pulled_deletes += 1


def _unlink(slot: TimeSlot, owned: bool) -> TimeSlot:
    if owned:
        return replace(slot, calendar_event_id=None)
    return replace(slot, external_event_id=None)


def pull_changes(
    config: SyncConfig,
    report: SyncReport,
    logger,
    calendar: CalendarCapability,
    state_db: StateDatabase,
    queue: SyncQueue,
    clock: Clock,
    policy: ConflictPolicy,
    force_full: bool = False,
):
    """
    Incremental pull with the stored token, or a full pull when there is no
    token (or ``force_full``).  An expired token falls back to a full pull.

    CalendarSyncError from the capability propagates to the caller.
    """
    token = None if force_full else state_db.get_meta(SYNC_TOKEN_KEY)
    changed: list[CalendarEvent] = []
    deleted_ids: list[str] = []
    new_token = None

    now = clock.now()
    time_min = now - datetime.timedelta(days=config.sync_past_days)
    time_max = now + datetime.timedelta(days=config.sync_future_days)

    if token:
        try:
            result = calendar.list_events_incremental(token, time_min, time_max)
            changed, deleted_ids, new_token = result.changed, result.deleted_ids, result.new_sync_token
            logger.debug(
                f"Incremental pull: {len(changed)} changed, {len(deleted_ids)} deleted"
            )
        except TokenExpired:
            logger.warning("Sync token expired; falling back to a full sync")
            if not config.dry_run:
                state_db.delete_meta(SYNC_TOKEN_KEY)
            token = None

    if not token:
        result = calendar.list_events_full(time_min, time_max)
        changed, new_token = result.events, result.sync_token
        report.was_full_sync = True
        logger.debug(f"Full pull: {len(changed)} event(s) between {time_min:%Y-%m-%d} and {time_max:%Y-%m-%d}")

    now = clock.now()
    for event in changed:
        _process_remote_change(config, report, logger, event, state_db, queue, policy, now)
    for event_id in deleted_ids:
        _process_remote_delete(config, report, logger, event_id, state_db)

    if not config.dry_run and new_token:
        state_db.set_meta(SYNC_TOKEN_KEY, new_token)
