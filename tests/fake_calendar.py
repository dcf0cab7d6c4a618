"""
In-memory fake calendar for testing.

Duck-type-compatible stand-in for EDSCalendar.  No EDS daemon is required:
events live in a plain dict keyed by id, and sync tokens are counters into a
change log so incremental listings return exactly what changed.
"""

import datetime
import itertools

from timeslot_sync.models import CalendarEvent
from timeslot_sync.models import CalendarOffline
from timeslot_sync.models import CalendarSyncError
from timeslot_sync.models import FullSyncResult
from timeslot_sync.models import IncrementalSyncResult
from timeslot_sync.models import TokenExpired


class FakeCalendar:
    """In-memory stub that satisfies the CalendarCapability contract."""

    def __init__(self, connected: bool = True, online: bool = True):
        self.connected = connected
        self.online = online
        self.events: dict[str, CalendarEvent] = {}
        self.calls: list[tuple] = []
        # Queue of exceptions to raise on the next create/update/delete calls
        self.fail_next: list[Exception] = []
        self.pull_error: Exception | None = None
        self.expired_tokens: set[str] = set()
        self._ids = itertools.count(1)
        self._log: list[tuple[str, str]] = []  # (kind, event_id) with kind in {"changed", "deleted"}

    # ------------------------------------------------------------------ #
    # CalendarCapability interface                                         #
    # ------------------------------------------------------------------ #

    def is_connected(self) -> bool:
        return self.connected

    def is_online(self) -> bool:
        return self.online

    def _maybe_fail(self):
        if not self.online:
            raise CalendarOffline("Calendar is offline")
        if self.fail_next:
            raise self.fail_next.pop(0)

    def create_event(self, title, start, end, color_tag, task_id=None) -> str:
        self.calls.append(("create", title, start, end, color_tag, task_id))
        self._maybe_fail()
        event_id = f"evt-{next(self._ids)}"
        self.events[event_id] = CalendarEvent(
            id=event_id, title=title, start=start, end=end, color_tag=color_tag, linked_task_id=task_id
        )
        return event_id

    def update_event(self, event_id, title, start, end, color_tag) -> None:
        self.calls.append(("update", event_id, title, start, end, color_tag))
        self._maybe_fail()
        if event_id not in self.events:
            raise CalendarSyncError(f"Event {event_id} not found")
        event = self.events[event_id]
        event.title, event.start, event.end, event.color_tag = title, start, end, color_tag

    def delete_event(self, event_id) -> None:
        self.calls.append(("delete", event_id))
        self._maybe_fail()
        self.events.pop(event_id, None)  # Already gone counts as success

    def list_events_full(self, time_min=None, time_max=None) -> FullSyncResult:
        self.calls.append(("list_full", time_min, time_max))
        if self.pull_error:
            raise self.pull_error
        return FullSyncResult(events=list(self.events.values()), sync_token=self._token())

    def list_events_incremental(self, token: str, time_min=None, time_max=None) -> IncrementalSyncResult:
        self.calls.append(("list_incremental", token, time_min, time_max))
        if self.pull_error:
            raise self.pull_error
        if token in self.expired_tokens or not token.startswith("tok-"):
            raise TokenExpired()
        since = int(token.removeprefix("tok-"))
        changed_ids, deleted_ids = [], []
        for kind, event_id in self._log[since:]:
            target = changed_ids if kind == "changed" else deleted_ids
            if event_id not in target:
                target.append(event_id)
        changed = [self.events[i] for i in changed_ids if i in self.events]
        return IncrementalSyncResult(
            changed=changed,
            deleted_ids=[i for i in deleted_ids if i not in self.events],
            new_sync_token=self._token(),
        )

    # ------------------------------------------------------------------ #
    # Test helpers (simulate edits made outside this system)               #
    # ------------------------------------------------------------------ #

    def _token(self) -> str:
        return f"tok-{len(self._log)}"

    def remote_move(self, event_id: str, start: datetime.datetime, end: datetime.datetime):
        event = self.events[event_id]
        event.start, event.end = start, end
        self._log.append(("changed", event_id))

    def remote_delete(self, event_id: str):
        self.events.pop(event_id, None)
        self._log.append(("deleted", event_id))

    def remote_add(self, event: CalendarEvent):
        self.events[event.id] = event
        self._log.append(("changed", event.id))

    def calls_of(self, kind: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == kind]
