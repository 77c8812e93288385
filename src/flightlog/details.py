"""Details area: flight totals and aircraft identity recorded by the app.

Details layout (little-endian, offsets relative to the area start):
  0    20s  sub_street          location strings, UTF-8, NUL padded
  20   20s  street
  40   20s  city
  60   20s  area
  80   B    is_favorite
  81   B    is_new
  82   B    needs_upload
  83   I    record_line_count
  87   I    unused
  91   Q    timestamp           epoch ms
  99   d    longitude           degrees
  107  d    latitude            degrees
  115  f    total_distance      m
  119  I    total_time          ms
  123  f    max_height          m
  127  f    max_horizontal_speed  m/s
  131  f    max_vertical_speed    m/s
  135  I    photo_count
  139  I    video_time          s
Version 6 and later append, at offset 143:
  143  137s unused
  280  32s  aircraft_name
  312  16s  aircraft_serial
  328  16s  camera_serial
  344  16s  rc_serial
  360  16s  battery_serial
  376  B    app_type
  377  3s   app_version         patch, minor, major

The area is only used for cross-checking and as a time fallback, so a short
buffer produces partial details instead of an error.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, fields
from datetime import datetime, timezone

from flightlog.header import SCRAMBLED_SINCE

logger = logging.getLogger(__name__)

DETAILS_FMT = "<20s20s20s20sBBBIIQddfIfffII"
DETAILS_SIZE = struct.calcsize(DETAILS_FMT)  # 143 bytes
DETAILS_TAIL_FMT = "<137s32s16s16s16s16sB3s"
DETAILS_TAIL_SIZE = struct.calcsize(DETAILS_TAIL_FMT)

# (field name, struct code) in file order; None marks an unused slot
_BASE_FIELDS = [
    ("sub_street", "20s"), ("street", "20s"), ("city", "20s"), ("area", "20s"),
    ("is_favorite", "B"), ("is_new", "B"), ("needs_upload", "B"),
    ("record_line_count", "I"), (None, "I"), ("timestamp_ms", "Q"),
    ("longitude", "d"), ("latitude", "d"), ("total_distance_m", "f"),
    ("total_time_ms", "I"), ("max_height_m", "f"),
    ("max_horizontal_speed_mps", "f"), ("max_vertical_speed_mps", "f"),
    ("photo_count", "I"), ("video_time_s", "I"),
]
_TAIL_FIELDS = [
    (None, "137s"), ("aircraft_name", "32s"), ("aircraft_serial", "16s"),
    ("camera_serial", "16s"), ("rc_serial", "16s"), ("battery_serial", "16s"),
    ("app_type", "B"), ("app_version", "3s"),
]


@dataclass(slots=True)
class FlightDetails:
    sub_street: str | None = None
    street: str | None = None
    city: str | None = None
    area: str | None = None
    is_favorite: int | None = None
    is_new: int | None = None
    needs_upload: int | None = None
    record_line_count: int | None = None
    timestamp_ms: int | None = None
    longitude: float | None = None
    latitude: float | None = None
    total_distance_m: float | None = None
    total_time_ms: int | None = None
    max_height_m: float | None = None
    max_horizontal_speed_mps: float | None = None
    max_vertical_speed_mps: float | None = None
    photo_count: int | None = None
    video_time_s: int | None = None
    aircraft_name: str | None = None
    aircraft_serial: str | None = None
    camera_serial: str | None = None
    rc_serial: str | None = None
    battery_serial: str | None = None
    app_type: int | None = None
    app_version: str | None = None
    complete: bool = False

    @property
    def start_time(self) -> datetime | None:
        if not self.timestamp_ms:
            return None
        return datetime.fromtimestamp(self.timestamp_ms / 1000, tz=timezone.utc)


def _text(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="ignore").strip()


def _convert(name: str, value):
    if name == "app_version":
        patch, minor, major = value
        return f"{major}.{minor}.{patch}"
    if isinstance(value, bytes):
        return _text(value)
    return value


def parse_details(data: bytes, version: int) -> FlightDetails:
    """Decode the Details area. Fields beyond the buffer stay None."""
    layout = list(_BASE_FIELDS)
    if version >= SCRAMBLED_SINCE:
        layout += _TAIL_FIELDS

    details = FlightDetails()
    offset = 0
    for name, code in layout:
        size = struct.calcsize("<" + code)
        if offset + size > len(data):
            logger.debug(
                "Details area truncated at offset %d (%d bytes, v%d)",
                offset, len(data), version,
            )
            return details
        (value,) = struct.unpack_from("<" + code, data, offset)
        offset += size
        if name is not None:
            setattr(details, name, _convert(name, value))

    details.complete = True
    return details


def build_details(details: FlightDetails, version: int) -> bytes:
    """Encode details back into the area layout. Used to write fixtures."""
    known = {f.name for f in fields(FlightDetails)}
    layout = list(_BASE_FIELDS)
    if version >= SCRAMBLED_SINCE:
        layout += _TAIL_FIELDS

    out = bytearray()
    for name, code in layout:
        value = getattr(details, name) if name in known else None
        if name == "app_version":
            major, minor, patch = (int(p) for p in (value or "0.0.0").split("."))
            value = bytes([patch, minor, major])
        elif code.endswith("s"):
            value = (value or "").encode("utf-8") if not isinstance(value, bytes) else value
        elif value is None:
            value = 0
        out += struct.pack("<" + code, value)
    return bytes(out)
