"""
Evolution Data Server calendar connectivity wrapper.
"""

import datetime
import logging
import uuid

import gi

gi.require_version("EDataServer", "1.2")
gi.require_version("ECal", "2.0")
gi.require_version("ICalGLib", "3.0")
from gi.repository import ECal
from gi.repository import EDataServer
from gi.repository import GLib
from gi.repository import ICalGLib

from timeslot_sync.ical import apply_event_fields
from timeslot_sync.ical import build_component
from timeslot_sync.ical import component_to_event
from timeslot_sync.ical import compute_hash
from timeslot_sync.ical import is_not_found_error
from timeslot_sync.ical import parse_component
from timeslot_sync.models import CalendarEvent
from timeslot_sync.models import CalendarOffline
from timeslot_sync.models import CalendarSyncError
from timeslot_sync.models import FullSyncResult
from timeslot_sync.models import IncrementalSyncResult
from timeslot_sync.snapshots import SnapshotTracker

logger = logging.getLogger(__name__)

OFFLINE_KEYWORDS = frozenset(
    {
        "offline",
        "network",
        "transport",
        "unreachable",
        "not connected",
        "no route",
        "authentication failed",
        "connection refused",
        "temporary failure",
    }
)


def is_offline_error(message: str) -> bool:
    return any(kw in (message or "").lower() for kw in OFFLINE_KEYWORDS)


def _wrap_error(action: str, e: GLib.Error) -> CalendarSyncError:
    msg = e.message or str(e)
    if is_offline_error(msg):
        return CalendarOffline(f"{action}: {msg}")
    return CalendarSyncError(f"{action}: {msg}")


def get_calendar_display_info(calendar_uid: str) -> tuple[str, str, str]:
    """
    Get human-readable information about a calendar.

    Returns:
        Tuple of (display_name, account_name, uid)
    """
    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
        source = registry.ref_source(calendar_uid)

        if not source:
            return ("Unknown Calendar", "", calendar_uid)

        display_name = source.get_display_name() or "Unnamed Calendar"

        account_name = ""
        parent_uid = source.get_parent()
        if parent_uid:
            parent_source = registry.ref_source(parent_uid)
            if parent_source:
                account_name = parent_source.get_display_name() or ""

        return (display_name, account_name, calendar_uid)
    except GLib.Error as e:
        return (f"Error: {e.message}", "", calendar_uid)


def list_calendars() -> list[tuple[str, str, str]]:
    """Return (uid, display_name, account_name) for every enabled calendar source."""
    registry = EDataServer.SourceRegistry.new_sync(None)
    calendars = []
    for source in registry.list_sources(EDataServer.SOURCE_EXTENSION_CALENDAR):
        if not source.get_enabled():
            continue
        account_name = ""
        parent_uid = source.get_parent()
        if parent_uid:
            parent = registry.ref_source(parent_uid)
            if parent:
                account_name = parent.get_display_name() or ""
        calendars.append((source.get_uid(), source.get_display_name() or "", account_name))
    return sorted(calendars, key=lambda c: (c[2], c[1]))


def _time_range_sexp(time_min: datetime.datetime | None, time_max: datetime.datetime | None) -> str:
    if time_min is None or time_max is None:
        # "#t" (boolean true) is the correct sexp for "all events".
        return "#t"
    fmt = "%Y%m%dT%H%M%SZ"
    start = time_min.astimezone(datetime.timezone.utc).strftime(fmt)
    end = time_max.astimezone(datetime.timezone.utc).strftime(fmt)
    return f'(occur-in-time-range? (make-time "{start}") (make-time "{end}"))'


class EDSCalendarClient:
    """Wrapper for Evolution Data Server calendar operations."""

    def __init__(self, registry: EDataServer.SourceRegistry, calendar_uid: str):
        self.registry = registry
        self.calendar_uid = calendar_uid
        self.client: ECal.Client | None = None

    def connect(self, timeout: int = 10):
        """Connect to the specified calendar in EDS."""
        source = self.registry.ref_source(self.calendar_uid)
        if not source:
            raise CalendarSyncError(f"Calendar with UID '{self.calendar_uid}' not found in EDS")

        try:
            self.client = ECal.Client.connect_sync(
                source, ECal.ClientSourceType.EVENTS, timeout, None
            )
        except GLib.Error as e:
            raise _wrap_error(f"Failed to connect to calendar {self.calendar_uid}", e) from e

    def get_events(self, sexp: str = "#t") -> list:
        """Retrieve events matching an EDS s-expression."""
        if not self.client:
            raise CalendarSyncError("Client not connected")

        try:
            _, objects = self.client.get_object_list_sync(sexp, None)
            return objects
        except GLib.Error as e:
            raise _wrap_error("Failed to fetch events", e) from e

    def create_event(self, component: ICalGLib.Component) -> str | None:
        """Create a new event in the calendar."""
        if not self.client:
            raise CalendarSyncError("Client not connected")

        try:
            success, out_uid = self.client.create_object_sync(
                component, ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise _wrap_error("Failed to create event", e) from e
        if not success:
            raise CalendarSyncError("Failed to create event")
        return out_uid

    def modify_event(self, component: ICalGLib.Component):
        """Modify an existing event in the calendar."""
        if not self.client:
            raise CalendarSyncError("Client not connected")

        try:
            success = self.client.modify_object_sync(
                component, ECal.ObjModType.THIS, ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise _wrap_error(f"Failed to modify event {component.get_uid()}", e) from e
        if not success:
            raise CalendarSyncError("Failed to modify event")

    def remove_event(self, uid: str):
        """Remove an event; an event that is already gone is not an error."""
        if not self.client:
            raise CalendarSyncError("Client not connected")

        try:
            success = self.client.remove_object_sync(
                uid,
                None,  # rid (recurrence-id)
                ECal.ObjModType.THIS,
                ECal.OperationFlags.NONE,
                None,  # cancellable
            )
        except GLib.Error as e:
            if is_not_found_error(e):
                logger.debug(f"Event {uid} already removed")
                return
            raise _wrap_error(f"Failed to remove event {uid}", e) from e
        if not success:
            raise CalendarSyncError(f"Failed to remove event {uid}")

    def get_event(self, uid: str) -> ICalGLib.Component | None:
        """Retrieve a single event by UID."""
        if not self.client:
            raise CalendarSyncError("Client not connected")

        try:
            success, icalcomp = self.client.get_object_sync(uid, None, None)
        except GLib.Error as e:
            if is_not_found_error(e):
                return None
            raise _wrap_error(f"Failed to fetch event {uid}", e) from e
        if success and icalcomp:
            return parse_component(icalcomp)
        return None


class EDSCalendar:
    """
    Calendar capability backed by one EDS calendar.

    EDS has no server-side change cursor, so sync tokens are snapshot ids
    (see SnapshotTracker).  Each listing is taken over the window the caller
    passes in, so a long-running client follows the clock.
    """

    def __init__(
        self,
        calendar_uid: str,
        snapshots: SnapshotTracker,
        registry: EDataServer.SourceRegistry | None = None,
    ):
        self.calendar_uid = calendar_uid
        self.snapshots = snapshots
        self.registry = registry
        self.client: EDSCalendarClient | None = None

    def connect(self, timeout: int = 10):
        logger.info("Connecting to Evolution Data Server...")
        if self.registry is None:
            try:
                self.registry = EDataServer.SourceRegistry.new_sync(None)
            except GLib.Error as e:
                raise _wrap_error("EDS registry unreachable", e) from e
        self.client = EDSCalendarClient(self.registry, self.calendar_uid)
        self.client.connect(timeout)

    # ------------------------------------------------------------------ #
    # Capability                                                           #
    # ------------------------------------------------------------------ #

    def is_connected(self) -> bool:
        return self.client is not None and self.client.client is not None

    def is_online(self) -> bool:
        return self.is_connected() and bool(self.client.client.is_online())

    def create_event(
        self,
        title: str,
        start: datetime.datetime,
        end: datetime.datetime,
        color_tag: str | None,
        task_id: str | None = None,
    ) -> str:
        uid = str(uuid.uuid4())
        component = build_component(uid, title, start, end, color_tag, task_id)
        return self._require_client().create_event(component) or uid

    def update_event(
        self,
        event_id: str,
        title: str,
        start: datetime.datetime,
        end: datetime.datetime,
        color_tag: str | None,
    ) -> None:
        client = self._require_client()
        component = client.get_event(event_id)
        if component is None:
            raise CalendarSyncError(f"Event {event_id} not found")
        event = component
        if component.isa() == ICalGLib.ComponentKind.VCALENDAR_COMPONENT:
            event = component.get_first_component(ICalGLib.ComponentKind.VEVENT_COMPONENT)
        apply_event_fields(event, title, start, end, color_tag)
        client.modify_event(event)

    def delete_event(self, event_id: str) -> None:
        self._require_client().remove_event(event_id)

    def list_events_full(
        self,
        time_min: datetime.datetime | None = None,
        time_max: datetime.datetime | None = None,
    ) -> FullSyncResult:
        components = self._fetch(_time_range_sexp(time_min, time_max))
        events = [e for e in (component_to_event(c) for c in components.values()) if e]
        token = self.snapshots.remember({uid: compute_hash(c) for uid, c in components.items()})
        logger.debug(f"Full listing of {self.calendar_uid}: {len(events)} event(s)")
        return FullSyncResult(events=events, sync_token=token)

    def list_events_incremental(
        self,
        token: str,
        time_min: datetime.datetime | None = None,
        time_max: datetime.datetime | None = None,
    ) -> IncrementalSyncResult:
        previous = self.snapshots.load(token)
        components = self._fetch(_time_range_sexp(time_min, time_max))
        current = {uid: compute_hash(comp) for uid, comp in components.items()}

        changed_uids, deleted_ids = self.snapshots.diff(previous, current, self._exists)
        changed: list[CalendarEvent] = []
        for uid in changed_uids:
            event = component_to_event(components[uid])
            if event:
                changed.append(event)

        new_token = self.snapshots.remember(current)
        return IncrementalSyncResult(changed=changed, deleted_ids=deleted_ids, new_sync_token=new_token)

    # ------------------------------------------------------------------ #
    # Internal helpers                                                     #
    # ------------------------------------------------------------------ #

    def _require_client(self) -> EDSCalendarClient:
        if not self.is_connected():
            raise CalendarSyncError("Client not connected")
        return self.client

    def _exists(self, uid: str) -> bool:
        return self._require_client().get_event(uid) is not None

    def _fetch(self, sexp: str) -> dict[str, ICalGLib.Component]:
        components = {}
        for obj in self._require_client().get_events(sexp):
            comp = parse_component(obj)
            uid = comp.get_uid()
            # Recurring exceptions share the master's UID; the master wins
            if uid and uid not in components:
                components[uid] = comp
        return components
