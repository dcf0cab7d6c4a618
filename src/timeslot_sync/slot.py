"""
TimeSlot and Task records with their derived-time logic.

Records are immutable; every derived value is a pure function of the record
and an explicit ``now``.  Nothing here reads the wall clock.
"""

import datetime
import enum
import uuid
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace

from timeslot_sync.models import DRIFT_TOLERANCE
from timeslot_sync.models import LONG_TASK_COMMITMENT
from timeslot_sync.models import LONG_TASK_MINUTES
from timeslot_sync.models import SESSION_MERGE_THRESHOLD
from timeslot_sync.models import SHORT_TASK_COMMITMENT
from timeslot_sync.models import RecordNotFound

_ZERO = datetime.timedelta(0)
_VARIANCE_TOLERANCE = datetime.timedelta(minutes=5)


class DisplayStatus(str, enum.Enum):
    """Coarse status for external observers, in priority order."""

    DISCARDED = "discarded"
    ACTIVE = "active"
    COMPLETED = "completed"
    MISSED = "missed"
    SCHEDULED = "scheduled"


class SessionState(str, enum.Enum):
    """Full lifecycle position of a slot, derived from its primitive fields."""

    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"  # Stopped, still inside the merge window
    COMPLETED = "completed"
    FINALIZED = "finalized"
    MISSED = "missed"
    DISCARDED = "discarded"


class TaskStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class TimeSlot:
    """One continuous-intent block of work: planned, actual and session truth."""

    planned_start: datetime.datetime
    planned_end: datetime.datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    actual_start: datetime.datetime | None = None
    actual_end: datetime.datetime | None = None
    session_start: datetime.datetime | None = None
    last_stop_time: datetime.datetime | None = None
    accumulated_seconds: int = 0
    is_active: bool = False
    is_discarded: bool = False
    has_synced_to_calendar: bool = False
    was_manual_continue: bool = False
    auto_end: bool = True
    calendar_event_id: str | None = None  # Event we created and own
    external_event_id: str | None = None  # Imported event, never deleted by us

    # ------------------------------------------------------------------ #
    # Linkage                                                              #
    # ------------------------------------------------------------------ #

    @property
    def is_imported(self) -> bool:
        return self.external_event_id is not None

    @property
    def is_pre_scheduled(self) -> bool:
        """True when the slot already has an event (committed or imported)."""
        return self.calendar_event_id is not None or self.external_event_id is not None

    @property
    def event_ref(self) -> str | None:
        return self.calendar_event_id or self.external_event_id

    # ------------------------------------------------------------------ #
    # Durations                                                            #
    # ------------------------------------------------------------------ #

    @property
    def planned_duration(self) -> datetime.timedelta:
        return self.planned_end - self.planned_start

    def actual_duration(self, now: datetime.datetime) -> datetime.timedelta:
        """Worked time across merged segments, excluding gaps."""
        accumulated = datetime.timedelta(seconds=self.accumulated_seconds)
        if self.is_active and self.actual_start is not None:
            return accumulated + (now - self.actual_start)
        return accumulated

    def session_duration(self, now: datetime.datetime) -> datetime.timedelta:
        """Span from session start to now (active) or to the last stop, gaps included."""
        if self.session_start is None:
            return _ZERO
        if self.is_active:
            return now - self.session_start
        if self.actual_end is not None:
            return self.actual_end - self.session_start
        return _ZERO

    def gap_since_last_stop(self, now: datetime.datetime) -> datetime.timedelta | None:
        if self.last_stop_time is None:
            return None
        return now - self.last_stop_time

    # ------------------------------------------------------------------ #
    # Lifecycle predicates                                                 #
    # ------------------------------------------------------------------ #

    @property
    def has_started(self) -> bool:
        return self.actual_start is not None or self.accumulated_seconds > 0

    @property
    def is_completed(self) -> bool:
        return not self.is_active and self.accumulated_seconds > 0

    def is_past_planned_end(self, now: datetime.datetime) -> bool:
        return now > self.planned_end

    def can_merge_session(self, now: datetime.datetime) -> bool:
        """Resuming now would continue the same session (gap strictly under 15 min)."""
        if self.last_stop_time is None:
            return False
        return now - self.last_stop_time < SESSION_MERGE_THRESHOLD

    def is_session_finalized(self, now: datetime.datetime) -> bool:
        """
        A completed session is finalized once BOTH hold:

        1. now > planned_end + merge threshold
        2. the merge window since the last stop has closed

        Condition 1 alone would finalize while overtime is still resumable;
        condition 2 alone would finalize an early stop with planned time left.
        """
        if not self.is_completed or self.last_stop_time is None:
            return False
        past_planned_end = now > self.planned_end + SESSION_MERGE_THRESHOLD
        return past_planned_end and not self.can_merge_session(now)

    # ------------------------------------------------------------------ #
    # Calendar projection                                                  #
    # ------------------------------------------------------------------ #

    def calendar_start_time(self, now: datetime.datetime) -> datetime.datetime:
        return self.calendar_window(now)[0]

    def calendar_end_time(self, now: datetime.datetime) -> datetime.datetime:
        return self.calendar_window(now)[1]

    @property
    def recorded_window(self) -> tuple[datetime.datetime, datetime.datetime] | None:
        """(session_start, actual_end) as pushed when the session was last stopped."""
        if self.session_start is None or self.actual_end is None:
            return None
        return self.session_start, self.actual_end

    def calendar_window(self, now: datetime.datetime) -> tuple[datetime.datetime, datetime.datetime]:
        """(start, end) the external calendar should show at ``now``."""
        if self.is_session_finalized(now) and self.actual_end is not None:
            return self.session_start, self.actual_end
        if self.is_active:
            start = self.session_start or self.actual_start or self.planned_start
            end = now if now > self.planned_end else self.planned_end
            return start, end
        if self.session_start is not None and self.can_merge_session(now):
            return self.session_start, self.planned_end
        return self.planned_start, self.planned_end

    # ------------------------------------------------------------------ #
    # Variance                                                             #
    # ------------------------------------------------------------------ #

    @property
    def start_variance(self) -> datetime.timedelta:
        """Positive when the session started late."""
        if self.actual_start is None:
            return _ZERO
        return self.actual_start - self.planned_start

    def duration_variance(self, now: datetime.datetime) -> datetime.timedelta:
        """Positive when more time was worked than planned."""
        if self.actual_end is None:
            return _ZERO
        return self.actual_duration(now) - self.planned_duration

    @property
    def actual_differs_from_planned(self) -> bool:
        if self.actual_start is None:
            return False
        end_diff = abs(self.actual_end - self.planned_end) if self.actual_end else _ZERO
        return abs(self.start_variance) > _VARIANCE_TOLERANCE or end_diff > _VARIANCE_TOLERANCE

    def drifted_from(self, start: datetime.datetime, end: datetime.datetime) -> bool:
        """True when (start, end) differs from the planned bounds beyond tolerance."""
        return (
            abs(self.planned_start - start) > DRIFT_TOLERANCE
            or abs(self.planned_end - end) > DRIFT_TOLERANCE
        )

    # ------------------------------------------------------------------ #
    # Status views                                                         #
    # ------------------------------------------------------------------ #

    def display_status(self, now: datetime.datetime) -> DisplayStatus:
        if self.is_discarded:
            return DisplayStatus.DISCARDED
        if self.is_active:
            return DisplayStatus.ACTIVE
        if self.is_completed:
            return DisplayStatus.COMPLETED
        if self.is_past_planned_end(now) and not self.has_started:
            return DisplayStatus.MISSED
        return DisplayStatus.SCHEDULED

    def session_state(self, now: datetime.datetime) -> SessionState:
        if self.is_discarded:
            return SessionState.DISCARDED
        if self.is_active:
            return SessionState.ACTIVE
        if self.is_completed:
            if self.is_session_finalized(now):
                return SessionState.FINALIZED
            if self.can_merge_session(now):
                return SessionState.PAUSED
            return SessionState.COMPLETED
        if self.is_past_planned_end(now) and not self.has_started:
            return SessionState.MISSED
        return SessionState.SCHEDULED


@dataclass(frozen=True)
class Task:
    """A unit of focused work owning an ordered set of time slots."""

    title: str
    estimated_minutes: int
    scheduled_date: datetime.date
    created_at: datetime.datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    color_tag: str | None = None
    status: TaskStatus = TaskStatus.NOT_STARTED
    is_complete: bool = False
    slots: tuple[TimeSlot, ...] = ()

    @property
    def commitment_threshold(self) -> datetime.timedelta:
        """5 minutes, or 10 minutes for tasks estimated at two hours or more."""
        if self.estimated_minutes >= LONG_TASK_MINUTES:
            return LONG_TASK_COMMITMENT
        return SHORT_TASK_COMMITMENT

    # ------------------------------------------------------------------ #
    # Aggregates                                                           #
    # ------------------------------------------------------------------ #

    @property
    def scheduled_minutes(self) -> int:
        """Planned minutes over non-discarded slots (completed slots still count)."""
        return sum(
            int(s.planned_duration.total_seconds() // 60) for s in self.slots if not s.is_discarded
        )

    @property
    def unscheduled_minutes(self) -> int:
        return max(self.estimated_minutes - self.scheduled_minutes, 0)

    def actual_minutes(self, now: datetime.datetime) -> int:
        return sum(
            int(s.actual_duration(now).total_seconds() // 60)
            for s in self.slots
            if not s.is_discarded
        )

    def remaining_minutes(self, now: datetime.datetime) -> int:
        return max(self.estimated_minutes - self.actual_minutes(now), 0)

    @property
    def needs_scheduling(self) -> bool:
        if not self.slots:
            return True
        if any(s.is_completed for s in self.slots):
            return False
        return self.unscheduled_minutes > 0

    # ------------------------------------------------------------------ #
    # Slot lookup                                                          #
    # ------------------------------------------------------------------ #

    def get_slot(self, slot_id: str) -> TimeSlot:
        for slot in self.slots:
            if slot.id == slot_id:
                return slot
        raise RecordNotFound(f"Slot {slot_id} not found in task {self.id}")

    def find_slot(self, slot_id: str) -> TimeSlot | None:
        return next((s for s in self.slots if s.id == slot_id), None)

    @property
    def active_slot(self) -> TimeSlot | None:
        return next((s for s in self.slots if s.is_active), None)

    @property
    def last_stopped_slot(self) -> TimeSlot | None:
        """Most recently stopped, non-discarded slot."""
        stopped = [
            s
            for s in self.slots
            if not s.is_active and s.last_stop_time is not None and not s.is_discarded
        ]
        if not stopped:
            return None
        return max(stopped, key=lambda s: s.last_stop_time)

    # ------------------------------------------------------------------ #
    # Copy-on-write edits                                                  #
    # ------------------------------------------------------------------ #

    def with_slot(self, slot: TimeSlot) -> "Task":
        """Return a copy with the slot of the same id replaced."""
        if self.find_slot(slot.id) is None:
            raise RecordNotFound(f"Slot {slot.id} not found in task {self.id}")
        return replace(self, slots=tuple(slot if s.id == slot.id else s for s in self.slots))

    def add_slot(self, slot: TimeSlot) -> "Task":
        return replace(self, slots=self.slots + (slot,))

    def remove_slot(self, slot_id: str) -> "Task":
        return replace(self, slots=tuple(s for s in self.slots if s.id != slot_id))
