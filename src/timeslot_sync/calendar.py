"""
The calendar capability consumed by the reconciler.

Any backend (EDS, a remote API, an in-memory fake) that implements these
methods can be synced against.  Failures are raised as CalendarSyncError;
deleting an event that is already gone counts as success.
"""

import datetime
from typing import Protocol

from timeslot_sync.models import FullSyncResult
from timeslot_sync.models import IncrementalSyncResult


class CalendarCapability(Protocol):
    def is_connected(self) -> bool: ...

    def is_online(self) -> bool: ...

    def create_event(
        self,
        title: str,
        start: datetime.datetime,
        end: datetime.datetime,
        color_tag: str | None,
        task_id: str | None = None,
    ) -> str:
        """Create an event and return its id."""
        ...

    def update_event(
        self,
        event_id: str,
        title: str,
        start: datetime.datetime,
        end: datetime.datetime,
        color_tag: str | None,
    ) -> None: ...

    def delete_event(self, event_id: str) -> None: ...

    def list_events_full(
        self,
        time_min: datetime.datetime | None = None,
        time_max: datetime.datetime | None = None,
    ) -> FullSyncResult: ...

    def list_events_incremental(
        self,
        token: str,
        time_min: datetime.datetime | None = None,
        time_max: datetime.datetime | None = None,
    ) -> IncrementalSyncResult:
        """
        Changes within the window since ``token``.  Events that merely left the
        window are not deletions.  Raises TokenExpired when the token is no
        longer valid.
        """
        ...
