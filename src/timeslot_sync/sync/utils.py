"""
Stateless helpers shared by the push and pull phases.
"""

import datetime
import logging
import re

from timeslot_sync.models import SyncOperation
from timeslot_sync.slot import TimeSlot

_logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^#?([0-9a-fA-F]{6})$")

# CSS3 colour names accepted by the RFC 7986 COLOR property, with their RGB values.
# Roughly the event palette offered by common calendar clients.
_CSS3_PALETTE = {
    "slateblue": (0x6A, 0x5A, 0xCD),
    "mediumseagreen": (0x3C, 0xB3, 0x71),
    "darkorchid": (0x99, 0x32, 0xCC),
    "salmon": (0xFA, 0x80, 0x72),
    "gold": (0xFF, 0xD7, 0x00),
    "coral": (0xFF, 0x7F, 0x50),
    "deepskyblue": (0x00, 0xBF, 0xFF),
    "dimgray": (0x69, 0x69, 0x69),
    "royalblue": (0x41, 0x69, 0xE1),
    "seagreen": (0x2E, 0x8B, 0x57),
    "crimson": (0xDC, 0x14, 0x3C),
}
DEFAULT_COLOR_NAME = "royalblue"


def color_name_for_hex(hex_color: str | None) -> str | None:
    """Map a tag's hex colour to the nearest CSS3 colour name.

    Returns None when no colour is set; unparseable values fall back to the
    default colour rather than failing the sync.
    """
    if not hex_color:
        return None
    match = _HEX_RE.match(hex_color.strip())
    if not match:
        _logger.debug(f"Unrecognised colour {hex_color!r}, using {DEFAULT_COLOR_NAME}")
        return DEFAULT_COLOR_NAME

    value = int(match.group(1), 16)
    rgb = ((value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF)

    def distance(candidate: tuple[int, int, int]) -> int:
        return sum((a - b) ** 2 for a, b in zip(rgb, candidate))

    return min(_CSS3_PALETTE, key=lambda name: distance(_CSS3_PALETTE[name]))


def resolve_window(
    op: SyncOperation, slot: TimeSlot | None, now: datetime.datetime
) -> tuple[datetime.datetime, datetime.datetime] | None:
    """Explicit operation times, else a one-time snapshot of the slot's calendar window."""
    if not op.is_live:
        return op.start, op.end
    if slot is None:
        return None
    return slot.calendar_window(now)


def within_tolerance(
    a: tuple[datetime.datetime, datetime.datetime],
    b: tuple[datetime.datetime, datetime.datetime],
    tolerance: datetime.timedelta,
) -> bool:
    return abs(a[0] - b[0]) <= tolerance and abs(a[1] - b[1]) <= tolerance


def format_window(start: datetime.datetime, end: datetime.datetime) -> str:
    return f"{start:%Y-%m-%d %H:%M}-{end:%H:%M}"
