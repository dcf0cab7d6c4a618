"""
Unit tests for iCalendar building and inspection in timeslot_sync.ical.

All tests use real ICalGLib components so that libical-glib behaviour (time
zone handling, property replacement, COLOR support) is exercised.
"""

import datetime

import pytest

gi = pytest.importorskip("gi")
try:
    gi.require_version("GLib", "2.0")
    gi.require_version("ICalGLib", "3.0")
except ValueError:
    pytest.skip("ICalGLib typelib is not installed", allow_module_level=True)
from gi.repository import GLib
from gi.repository import ICalGLib

from tests.conftest import at
from timeslot_sync.ical import apply_event_fields
from timeslot_sync.ical import build_component
from timeslot_sync.ical import component_to_event
from timeslot_sync.ical import compute_hash
from timeslot_sync.ical import from_ical_time
from timeslot_sync.ical import is_managed_event
from timeslot_sync.ical import is_not_found_error
from timeslot_sync.ical import linked_task_id
from timeslot_sync.ical import parse_component
from timeslot_sync.ical import to_ical_time


def _vevent(uid: str, extra_lines=(), dtstart="DTSTART:20260302T140000Z", dtend="DTEND:20260302T150000Z"):
    lines = ["BEGIN:VEVENT", f"UID:{uid}", "SUMMARY:Imported meeting", dtstart]
    if dtend:
        lines.append(dtend)
    lines.extend(extra_lines)
    lines.append("END:VEVENT")
    return parse_component("\r\n".join(lines) + "\r\n")


class _GLibError(GLib.Error):
    """GLib.Error subclass with controllable domain/code/message."""

    def __init__(self, domain: str = "", code: int = 0, message: str = ""):
        # Attribute access is all the checks need
        self.domain = domain
        self.code = code
        self.message = message


class TestBuildComponent:
    def test_managed_event_reads_back(self):
        comp = build_component("uid-1", "Deep work", at(9), at(9, 45), color_name="crimson", task_id="task-7")
        event = component_to_event(comp)

        assert event.id == "uid-1"
        assert event.title == "Deep work"
        assert (event.start, event.end) == (at(9), at(9, 45))
        assert event.color_tag == "crimson"
        assert event.linked_task_id == "task-7"
        assert not event.all_day
        assert is_managed_event(comp)

    def test_without_color_or_task(self):
        comp = build_component("uid-2", "Reading", at(10), at(11))
        event = component_to_event(comp)
        assert event.color_tag is None
        assert event.linked_task_id is None
        assert is_managed_event(comp)

    def test_apply_fields_replaces_instead_of_appending(self):
        comp = build_component("uid-3", "Draft", at(9), at(10), color_name="gold")
        apply_event_fields(comp, "Final", at(13), at(14, 30), "seagreen")

        assert comp.count_properties(ICalGLib.PropertyKind.DTSTART_PROPERTY) == 1
        assert comp.count_properties(ICalGLib.PropertyKind.COLOR_PROPERTY) == 1
        event = component_to_event(comp)
        assert event.title == "Final"
        assert (event.start, event.end) == (at(13), at(14, 30))
        assert event.color_tag == "seagreen"


class TestComponentToEvent:
    def test_unmanaged_event_has_no_task_link(self):
        comp = _vevent("ext-1", ["DESCRIPTION:timeslot-task:abc"])
        event = component_to_event(comp)

        assert not is_managed_event(comp)
        assert event.linked_task_id is None
        # The marker is still readable directly
        assert linked_task_id(comp) == "abc"
        assert (event.start, event.end) == (at(14), at(15))

    def test_missing_dtend_uses_start(self):
        event = component_to_event(_vevent("ext-2", dtend=None))
        assert event.end == event.start

    def test_all_day_event(self):
        event = component_to_event(_vevent("ext-3", dtstart="DTSTART;VALUE=DATE:20260302", dtend=None))
        assert event.all_day

    def test_vcalendar_wrapper(self):
        comp = parse_component(
            "BEGIN:VCALENDAR\r\n"
            "VERSION:2.0\r\n"
            "BEGIN:VEVENT\r\n"
            "UID:wrapped\r\n"
            "SUMMARY:Wrapped\r\n"
            "DTSTART:20260302T090000Z\r\n"
            "DTEND:20260302T100000Z\r\n"
            "END:VEVENT\r\n"
            "END:VCALENDAR\r\n"
        )
        assert component_to_event(comp).id == "wrapped"


class TestTimeConversion:
    def test_offset_datetime_is_read_back_as_utc(self):
        local = datetime.datetime(2026, 3, 2, 11, 0, tzinfo=datetime.timezone(datetime.timedelta(hours=2)))
        converted = from_ical_time(to_ical_time(local))
        assert converted == at(9)
        assert converted.tzinfo == datetime.timezone.utc


class TestComputeHash:
    def test_volatile_props_ignored(self):
        base = _vevent("h1", ["DTSTAMP:20260101T000000Z"])
        other = _vevent("h1", ["DTSTAMP:20260224T120000Z", "SEQUENCE:3"])
        assert compute_hash(base) == compute_hash(other)

    def test_time_change_differs(self):
        moved = _vevent("h2", dtstart="DTSTART:20260302T160000Z", dtend="DTEND:20260302T170000Z")
        assert compute_hash(_vevent("h2")) != compute_hash(moved)


class TestIsNotFoundError:
    def test_eds_client_quark_code_1(self):
        err = _GLibError(domain="e-cal-client-error-quark", code=1, message="not found")
        assert is_not_found_error(err) is True

    def test_eds_wrong_code(self):
        err = _GLibError(domain="e-cal-client-error-quark", code=5, message="some error")
        assert is_not_found_error(err) is False

    def test_m365_error_item_not_found(self):
        err = _GLibError(domain="e-m365-error-quark", code=42, message="Exchange error: ErrorItemNotFound")
        assert is_not_found_error(err) is True

    def test_plain_exception_message(self):
        assert is_not_found_error(Exception("Object Not Found")) is True
        assert is_not_found_error(Exception("permission denied")) is False
