"""
Pure data models; no EDS or sqlite imports.
"""

import datetime
import enum
import uuid
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/timeslot-sync-state.db"
DEFAULT_CONFIG = Path.home() / ".config/timeslot-sync.conf"

# Gaps shorter than this between a stop and the next start belong to the same session.
SESSION_MERGE_THRESHOLD = datetime.timedelta(minutes=15)

SHORT_TASK_COMMITMENT = datetime.timedelta(minutes=5)
LONG_TASK_COMMITMENT = datetime.timedelta(minutes=10)
LONG_TASK_MINUTES = 120

# A scheduled slot is only reused by a smart start when it begins within this window.
SLOT_PROXIMITY_THRESHOLD = datetime.timedelta(minutes=30)

MAX_RETRIES = 5

# Remote time differences at or below this are not treated as external edits.
DRIFT_TOLERANCE = datetime.timedelta(minutes=1)


class TimeslotSyncError(Exception):
    """Base exception for all timeslot-sync errors."""

    pass


class InvalidTransition(TimeslotSyncError):
    """Illegal start/stop ordering on a slot (caller synchronisation bug)."""

    pass


class MergeWindowExpired(InvalidTransition):
    """Resume attempted after the merge window closed; a new slot is required."""

    pass


class RecordNotFound(TimeslotSyncError):
    """A task or slot id does not exist in the store."""

    pass


class StoreError(TimeslotSyncError):
    """The state database rejected a read or write."""

    pass


class CalendarSyncError(TimeslotSyncError):
    """A calendar capability call failed (network, server or backend error)."""

    pass


class TokenExpired(CalendarSyncError):
    """The incremental sync token is no longer accepted by the calendar."""

    def __init__(self, message: str = "Sync token expired or invalid"):
        super().__init__(message)


class CalendarOffline(CalendarSyncError):
    """The calendar backend is unreachable."""

    pass


@dataclass
class SyncConfig:
    """Configuration for a sync run."""

    calendar_id: str
    state_db_path: Path
    dry_run: bool = False
    verbose: bool = False
    force_full: bool = False
    max_retries: int = MAX_RETRIES
    sync_past_days: int = 30
    sync_future_days: int = 90
    overtime_refresh: datetime.timedelta = datetime.timedelta(minutes=5)


class OperationType(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class SyncOperation:
    """A queued mutation against the external calendar.

    ``start``/``end`` left as None mark a *live* operation: the reconciler
    snapshots the slot's calendar window when it builds the request.
    """

    type: OperationType
    task_id: str
    created_at: datetime.datetime
    slot_id: str | None = None
    external_ref: str | None = None
    title: str | None = None
    start: datetime.datetime | None = None
    end: datetime.datetime | None = None
    color_tag: str | None = None
    retry_count: int = 0
    last_error: str | None = None
    max_retries: int = MAX_RETRIES
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    seq: int | None = None  # FIFO position, assigned by the store

    @property
    def is_live(self) -> bool:
        return self.start is None or self.end is None

    @property
    def has_exceeded_retries(self) -> bool:
        return self.retry_count >= self.max_retries

    def record_failure(self, error: str):
        """Increment the retry count and remember the error message."""
        self.retry_count += 1
        self.last_error = error


@dataclass
class CalendarEvent:
    """An event as seen in the external calendar."""

    id: str
    title: str
    start: datetime.datetime
    end: datetime.datetime
    color_tag: str | None = None
    linked_task_id: str | None = None  # Set when the event was created by us
    all_day: bool = False


@dataclass
class FullSyncResult:
    events: list[CalendarEvent]
    sync_token: str


@dataclass
class IncrementalSyncResult:
    changed: list[CalendarEvent]
    deleted_ids: list[str]
    new_sync_token: str


class SyncStatus(str, enum.Enum):
    SUCCESS = "success"
    NOT_CONNECTED = "notConnected"
    OFFLINE = "offline"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class SyncReport:
    """Summary of one reconciliation pass."""

    status: SyncStatus
    timestamp: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )
    error_message: str | None = None
    pushed_creates: int = 0
    pushed_updates: int = 0
    pushed_deletes: int = 0
    pulled_updates: int = 0
    pulled_deletes: int = 0
    conflicts_resolved: int = 0
    conflicts_reported: int = 0
    conflict_details: list[str] = field(default_factory=list)
    failures: int = 0
    deferred: int = 0
    dead_lettered: list[str] = field(default_factory=list)
    was_full_sync: bool = False
    duration: datetime.timedelta | None = None

    @classmethod
    def not_connected(cls) -> "SyncReport":
        return cls(status=SyncStatus.NOT_CONNECTED, error_message="Not connected to calendar")

    @classmethod
    def offline(cls) -> "SyncReport":
        return cls(status=SyncStatus.OFFLINE, error_message="Calendar is offline")

    @classmethod
    def skipped(cls, reason: str) -> "SyncReport":
        return cls(status=SyncStatus.SKIPPED, error_message=reason)

    @property
    def is_success(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    @property
    def total_pushed(self) -> int:
        return self.pushed_creates + self.pushed_updates + self.pushed_deletes

    @property
    def total_pulled(self) -> int:
        return self.pulled_updates + self.pulled_deletes

    @property
    def had_changes(self) -> bool:
        return self.total_pushed > 0 or self.total_pulled > 0

    @property
    def summary(self) -> str:
        if self.status == SyncStatus.SUCCESS:
            if not self.had_changes:
                return "Everything up to date"
            parts = []
            if self.total_pushed:
                parts.append(f"{self.total_pushed} pushed")
            if self.total_pulled:
                parts.append(f"{self.total_pulled} pulled")
            return ", ".join(parts)
        return {
            SyncStatus.NOT_CONNECTED: "Not connected to calendar",
            SyncStatus.OFFLINE: "Offline - changes queued",
            SyncStatus.ERROR: "Sync failed",
            SyncStatus.SKIPPED: "Sync skipped",
        }[self.status]
