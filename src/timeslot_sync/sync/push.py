"""
Push phase: drain the sync queue against the calendar.
"""

import datetime
import threading
from dataclasses import replace

from timeslot_sync.calendar import CalendarCapability
from timeslot_sync.clock import Clock
from timeslot_sync.db import StateDatabase
from timeslot_sync.models import CalendarSyncError
from timeslot_sync.models import OperationType
from timeslot_sync.models import SyncConfig
from timeslot_sync.models import SyncOperation
from timeslot_sync.models import SyncReport
from timeslot_sync.queue import SyncQueue
from timeslot_sync.sync.utils import color_name_for_hex
from timeslot_sync.sync.utils import format_window
from timeslot_sync.sync.utils import resolve_window

# Claims older than this belong to a pass that died mid-request.
STALE_CLAIM_AGE = datetime.timedelta(minutes=10)


def _apply_create(
    logger,
    op: SyncOperation,
    calendar: CalendarCapability,
    state_db: StateDatabase,
    queue: SyncQueue,
    now: datetime.datetime,
    report: SyncReport,
):
    found = state_db.find_slot(op.slot_id) if op.slot_id else None
    if found is None or found[1].is_discarded:
        logger.info(f"Slot {op.slot_id} no longer exists; skipping create")
        queue.complete(op)
        return

    task, slot = found
    if slot.calendar_event_id is not None:
        logger.debug(f"Slot {slot.id} already has event {slot.calendar_event_id}; skipping create")
        queue.complete(op)
        return

    start, end = resolve_window(op, slot, now)
    event_id = calendar.create_event(
        op.title or task.title, start, end, color_name_for_hex(op.color_tag), task_id=task.id
    )
    logger.debug(f"Created event {event_id} for slot {slot.id} ({format_window(start, end)})")

    # The slot may have been removed or discarded while the request was in flight
    found = state_db.find_slot(slot.id)
    if found is None or found[1].is_discarded:
        logger.info(f"Slot {slot.id} vanished during create; queueing delete of {event_id}")
        queue.enqueue_delete(op.task_id, op.slot_id, event_id)
    else:
        task, slot = found
        state_db.put_task(
            task.with_slot(replace(slot, calendar_event_id=event_id, has_synced_to_calendar=True))
        )

    queue.complete(op)
    report.pushed_creates += 1


def _apply_update(
    logger,
    op: SyncOperation,
    calendar: CalendarCapability,
    state_db: StateDatabase,
    queue: SyncQueue,
    now: datetime.datetime,
    report: SyncReport,
):
    found = state_db.find_slot(op.slot_id) if op.slot_id else None
    if found is None:
        logger.info(f"Slot {op.slot_id} no longer exists; skipping update")
        queue.complete(op)
        return

    task, slot = found
    event_id = op.external_ref or slot.event_ref
    if event_id is None:
        logger.info(f"Slot {slot.id} has no calendar event; skipping update")
        queue.complete(op)
        return

    start, end = resolve_window(op, slot, now)
    calendar.update_event(
        event_id, op.title or task.title, start, end, color_name_for_hex(op.color_tag)
    )
    logger.debug(f"Updated event {event_id} ({format_window(start, end)})")
    queue.complete(op)
    report.pushed_updates += 1


def _apply_delete(
    logger,
    op: SyncOperation,
    calendar: CalendarCapability,
    state_db: StateDatabase,
    queue: SyncQueue,
    report: SyncReport,
):
    event_id = op.external_ref
    if event_id is None and op.slot_id:
        found = state_db.find_slot(op.slot_id)
        event_id = found[1].calendar_event_id if found else None
    if event_id is None:
        logger.info(f"No event to delete for slot {op.slot_id}; skipping")
        queue.complete(op)
        return

    calendar.delete_event(event_id)
    logger.debug(f"Deleted event {event_id}")
    queue.complete(op)
    report.pushed_deletes += 1


def _log_dry_run(logger, op: SyncOperation, state_db: StateDatabase, now: datetime.datetime):
    found = state_db.find_slot(op.slot_id) if op.slot_id else None
    if op.type == OperationType.DELETE:
        logger.info(f"[DRY RUN] Would DELETE event {op.external_ref}")
        return
    window = resolve_window(op, found[1] if found else None, now)
    when = format_window(*window) if window else "(slot missing)"
    ref = f" {op.external_ref}" if op.external_ref else ""
    logger.info(f"[DRY RUN] Would {op.type.value.upper()} event{ref} '{op.title}' {when}")


def drain_queue(
    config: SyncConfig,
    report: SyncReport,
    logger,
    calendar: CalendarCapability,
    state_db: StateDatabase,
    queue: SyncQueue,
    clock: Clock,
    cancel: threading.Event | None = None,
) -> bool:
    """
    Apply pending operations in FIFO order.

    After a failure, later entries for the same slot wait for the next pass so
    that a slot's operations are never applied out of order.

    Returns True when the pass was cancelled part-way.
    """
    if not config.dry_run:
        queue.release_stale_claims(STALE_CLAIM_AGE)

    for dead in queue.dead_letters():
        logger.warning(
            f"Dead letter {dead.id}: {dead.type.value} for slot {dead.slot_id} "
            f"({dead.retry_count} attempts, last error: {dead.last_error})"
        )
        report.dead_lettered.append(dead.id)

    blocked_slots: set[str] = set()

    for op in queue.pending():
        if cancel is not None and cancel.is_set():
            logger.info("Sync cancelled; remaining operations stay queued")
            return True

        if op.slot_id is not None and op.slot_id in blocked_slots:
            logger.debug(f"Deferring {op.type.value} #{op.seq}: earlier operation for slot failed")
            report.deferred += 1
            continue

        now = clock.now()

        if config.dry_run:
            _log_dry_run(logger, op, state_db, now)
            if op.type == OperationType.CREATE:
                report.pushed_creates += 1
            elif op.type == OperationType.UPDATE:
                report.pushed_updates += 1
            else:
                report.pushed_deletes += 1
            continue

        if not queue.claim(op):
            logger.debug(f"Operation #{op.seq} is claimed by another pass; skipping")
            continue

        try:
            if op.type == OperationType.CREATE:
                _apply_create(logger, op, calendar, state_db, queue, now, report)
            elif op.type == OperationType.UPDATE:
                _apply_update(logger, op, calendar, state_db, queue, now, report)
            else:
                _apply_delete(logger, op, calendar, state_db, queue, report)
        except CalendarSyncError as e:
            queue.record_failure(op, str(e))
            report.failures += 1
            if op.slot_id is not None:
                blocked_slots.add(op.slot_id)
            if op.has_exceeded_retries:
                report.dead_lettered.append(op.id)
            else:
                logger.warning(
                    f"Failed to {op.type.value} event for slot {op.slot_id} "
                    f"(attempt {op.retry_count}/{op.max_retries}): {e}"
                )
        except Exception:
            queue.release(op)
            raise

    return False
