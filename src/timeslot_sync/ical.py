"""
iCalendar component building and inspection for slot events.
"""

import datetime
import hashlib
import logging
import re

import gi

gi.require_version("ICalGLib", "3.0")
gi.require_version("GLib", "2.0")
from gi.repository import GLib
from gi.repository import ICalGLib

from timeslot_sync.models import CalendarEvent

_logger = logging.getLogger(__name__)

# Marker category for events this tool owns
# (X-properties and COMMENT are stripped by some servers, so we use CATEGORIES)
MANAGED_CATEGORY = "TIMESLOT-SYNC-MANAGED"

TASK_MARKER_PREFIX = "timeslot-task:"
_TASK_MARKER_RE = re.compile(r"timeslot-task:(\S+)")

# E_CAL_CLIENT_ERROR_OBJECT_NOT_FOUND = 1  (from e-cal-client-error-quark)
_EDS_NOT_FOUND_CODE = 1
_EDS_CLIENT_ERROR_DOMAIN = "e-cal-client-error-quark"

# The M365 backend (e-m365-error-quark) embeds the Exchange EWS error name in the
# message string rather than mapping it to a fixed quark code.
_M365_ERROR_DOMAIN = "e-m365-error-quark"
_M365_NOT_FOUND_MSG = "ErrorItemNotFound"


def is_not_found_error(e: Exception) -> bool:
    """Return True when EDS reports that a calendar object does not exist.

    Covers both the generic EDS client quark (e-cal-client-error-quark code 1)
    and the M365 backend quark, which embeds "ErrorItemNotFound" in the message.
    """
    if isinstance(e, GLib.Error):
        domain = e.domain or ""
        if e.code == _EDS_NOT_FOUND_CODE and _EDS_CLIENT_ERROR_DOMAIN in domain:
            return True
        if _M365_ERROR_DOMAIN in domain and _M365_NOT_FOUND_MSG in (e.message or ""):
            return True
    return "object not found" in str(e).lower()


def parse_component(obj) -> ICalGLib.Component:
    """Handle both string and native Component objects from EDS API."""
    if isinstance(obj, str):
        return ICalGLib.Component.new_from_string(obj)
    return obj


def _vevent(comp: ICalGLib.Component) -> ICalGLib.Component | None:
    if comp.isa() == ICalGLib.ComponentKind.VCALENDAR_COMPONENT:
        return comp.get_first_component(ICalGLib.ComponentKind.VEVENT_COMPONENT)
    if comp.isa() == ICalGLib.ComponentKind.VEVENT_COMPONENT:
        return comp
    return None


def compute_hash(comp: ICalGLib.Component) -> str:
    """
    SHA256 of an event's content for change detection.

    Volatile server-added properties are removed from a copy first so a
    re-serialisation by the backend does not look like an edit.
    """
    copy = ICalGLib.Component.new_from_string(comp.as_ical_string())
    volatile_props = [
        ICalGLib.PropertyKind.DTSTAMP_PROPERTY,
        ICalGLib.PropertyKind.LASTMODIFIED_PROPERTY,
        ICalGLib.PropertyKind.CREATED_PROPERTY,
        ICalGLib.PropertyKind.SEQUENCE_PROPERTY,
    ]
    event = _vevent(copy)
    if event is not None:
        for prop_kind in volatile_props:
            _remove_all_properties(event, prop_kind)
    return hashlib.sha256(copy.as_ical_string().encode("utf-8")).hexdigest()


# ----------------------------------------------------------------------------- #
# Time conversion                                                               #
# ----------------------------------------------------------------------------- #


def to_ical_time(value: datetime.datetime) -> ICalGLib.Time:
    """UTC ICalGLib.Time for an aware datetime."""
    utc = ICalGLib.Timezone.get_utc_timezone()
    return ICalGLib.Time.new_from_timet_with_zone(int(value.timestamp()), 0, utc)


def from_ical_time(value: ICalGLib.Time) -> datetime.datetime:
    """Aware UTC datetime; floating and date-only values are read as UTC."""
    zone = value.get_timezone() or ICalGLib.Timezone.get_utc_timezone()
    timet = value.as_timet_with_zone(zone)
    return datetime.datetime.fromtimestamp(timet, tz=datetime.timezone.utc)


# ----------------------------------------------------------------------------- #
# Building                                                                      #
# ----------------------------------------------------------------------------- #


def _remove_all_properties(component: ICalGLib.Component, prop_kind: ICalGLib.PropertyKind):
    """Remove all instances of a specific property from a component."""
    prop = component.get_first_property(prop_kind)
    while prop:
        component.remove_property(prop)
        prop = component.get_first_property(prop_kind)


def _set_color(event: ICalGLib.Component, color_name: str | None):
    _remove_all_properties(event, ICalGLib.PropertyKind.COLOR_PROPERTY)
    if color_name:
        event.add_property(ICalGLib.Property.new_from_string(f"COLOR:{color_name}"))


def apply_event_fields(
    event: ICalGLib.Component,
    title: str,
    start: datetime.datetime,
    end: datetime.datetime,
    color_name: str | None,
):
    """Overwrite summary, times and colour on an existing VEVENT in place."""
    for prop_kind in (
        ICalGLib.PropertyKind.SUMMARY_PROPERTY,
        ICalGLib.PropertyKind.DTSTART_PROPERTY,
        ICalGLib.PropertyKind.DTEND_PROPERTY,
        ICalGLib.PropertyKind.DURATION_PROPERTY,
        ICalGLib.PropertyKind.DTSTAMP_PROPERTY,
    ):
        _remove_all_properties(event, prop_kind)

    event.add_property(ICalGLib.Property.new_summary(title))
    event.add_property(ICalGLib.Property.new_dtstart(to_ical_time(start)))
    event.add_property(ICalGLib.Property.new_dtend(to_ical_time(end)))
    event.add_property(
        ICalGLib.Property.new_dtstamp(to_ical_time(datetime.datetime.now(datetime.timezone.utc)))
    )
    _set_color(event, color_name)


def build_component(
    uid: str,
    title: str,
    start: datetime.datetime,
    end: datetime.datetime,
    color_name: str | None = None,
    task_id: str | None = None,
) -> ICalGLib.Component:
    """Build a managed VEVENT for a slot."""
    event = ICalGLib.Component.new_vevent()
    event.add_property(ICalGLib.Property.new_uid(uid))
    apply_event_fields(event, title, start, end, color_name)
    event.add_property(ICalGLib.Property.new_categories(MANAGED_CATEGORY))
    event.add_property(ICalGLib.Property.new_transp(ICalGLib.PropertyTransp.OPAQUE))
    if task_id:
        event.add_property(ICalGLib.Property.new_description(f"{TASK_MARKER_PREFIX}{task_id}"))
    return event


# ----------------------------------------------------------------------------- #
# Inspection                                                                    #
# ----------------------------------------------------------------------------- #


def is_managed_event(component: ICalGLib.Component) -> bool:
    """Check if an event was created by this tool."""
    event = _vevent(component)
    if event is None:
        return False
    prop = event.get_first_property(ICalGLib.PropertyKind.CATEGORIES_PROPERTY)
    while prop:
        categories = prop.get_categories()
        if categories and MANAGED_CATEGORY in categories:
            return True
        prop = event.get_next_property(ICalGLib.PropertyKind.CATEGORIES_PROPERTY)
    return False


def linked_task_id(component: ICalGLib.Component) -> str | None:
    event = _vevent(component)
    if event is None:
        return None
    description = event.get_description() or ""
    match = _TASK_MARKER_RE.search(description)
    return match.group(1) if match else None


def color_of(component: ICalGLib.Component) -> str | None:
    event = _vevent(component)
    prop = event.get_first_property(ICalGLib.PropertyKind.COLOR_PROPERTY) if event else None
    if not prop:
        return None
    return (prop.get_value_as_string() or "").strip() or None


def component_to_event(component: ICalGLib.Component) -> CalendarEvent | None:
    """Convert a VEVENT into a CalendarEvent; None for components without a start."""
    event = _vevent(component)
    if event is None:
        return None

    dtstart = event.get_dtstart()
    if dtstart is None or dtstart.is_null_time():
        _logger.debug(f"Skipping event {event.get_uid()} without DTSTART")
        return None
    dtend = event.get_dtend()
    if dtend is None or dtend.is_null_time():
        dtend = dtstart

    return CalendarEvent(
        id=event.get_uid(),
        title=event.get_summary() or "",
        start=from_ical_time(dtstart),
        end=from_ical_time(dtend),
        color_tag=color_of(event),
        linked_task_id=linked_task_id(event) if is_managed_event(event) else None,
        all_day=bool(dtstart.is_date()),
    )
