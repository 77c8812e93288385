"""Record type dispatch and per-type payload decoders.

Every decoder works on a descrambled (and, if needed, decrypted) payload.
Byte layouts and scale factors are pinned as module constants because the
format is not publicly documented.
"""

from __future__ import annotations

import logging
import math
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Union

from flightlog.errors import DecodeError
from flightlog.geo import is_valid_coordinate
from flightlog.keychain import KeyRange
from flightlog.models import DataPoint
from flightlog.records import Record, RecordType

logger = logging.getLogger(__name__)

# Telemetry (OSD): tick, lat, lon, height, vx, vy, vz, yaw, gimbal pitch,
#                  battery %, satellites, signal, status flags
TELEMETRY_FMT = "<IiihhhhhhBBBB"
TELEMETRY_SIZE = struct.calcsize(TELEMETRY_FMT)  # 28 bytes
COORD_SCALE = 1e-7      # int32 -> degrees
HEIGHT_SCALE = 0.1      # int16 -> meters
SPEED_SCALE = 0.1       # int16 -> m/s
ANGLE_SCALE = 0.1       # int16 -> degrees
NULL_ISLAND_EPSILON = 0.001  # |lat| and |lon| below this: no real fix
UNAVAILABLE_U8 = 0xFF

FLAG_GPS_VALID = 0x01
FLAG_PHOTO = 0x02
FLAG_VIDEO = 0x04
FLAG_COMPASS_ERROR = 0x08
FLAG_MOTOR_BLOCKED = 0x10
FLAG_BAROMETER_DEAD = 0x20

# Custom: unused, horizontal speed, distance, wall clock (epoch ms)
CLOCK_FMT = "<HffQ"
CLOCK_SIZE = struct.calcsize(CLOCK_FMT)  # 18 bytes

# Center battery: relative capacity, pack mV, current/full mAh, life,
#                 loop count, error flags, current mA, 6 cells mV,
#                 serial, product date, temperature 0.01 C
BATTERY_FMT = "<BHHHBHIh6HHHh"
BATTERY_SIZE = struct.calcsize(BATTERY_FMT)  # 34 bytes
MILLI = 1e-3
CENTI = 1e-2

# Recover: drone type, app type, app version (3 bytes), aircraft serial,
#          aircraft name, activation time, camera/RC/battery serials
METADATA_FMT = "<BBBBB16s32sI16s16s16s"
METADATA_SIZE = struct.calcsize(METADATA_FMT)  # 105 bytes

# Camera shot: photo index, name length, name bytes
PHOTO_MARKER_FMT = "<HB"
PHOTO_MARKER_SIZE = struct.calcsize(PHOTO_MARKER_FMT)

# Key storage: window start, window end, feature point, key ciphertext
KEY_STORAGE_FMT = "<IIH"
KEY_STORAGE_SIZE = struct.calcsize(KEY_STORAGE_FMT)


@dataclass(slots=True)
class Telemetry:
    """Decoded telemetry record; timestamps still on the recording clock."""
    tick_ms: int
    lat: float | None
    lon: float | None
    altitude_m: float
    speed_mps: float
    vertical_speed_mps: float
    heading_deg: float
    gimbal_pitch_deg: float
    battery_percent: int | None
    satellite_count: int
    signal_strength: int | None
    flags: int

    def to_data_point(self, offset_ms: int) -> DataPoint:
        return DataPoint(
            timestamp_offset_ms=offset_ms,
            lat=self.lat,
            lon=self.lon,
            altitude_m=self.altitude_m,
            speed_mps=self.speed_mps,
            heading_deg=self.heading_deg,
            gimbal_pitch_deg=self.gimbal_pitch_deg,
            battery_percent=self.battery_percent,
            satellite_count=self.satellite_count,
            signal_strength=self.signal_strength,
            is_photo=bool(self.flags & FLAG_PHOTO),
            is_video_recording=bool(self.flags & FLAG_VIDEO),
            compass_error=bool(self.flags & FLAG_COMPASS_ERROR),
            motor_blocked=bool(self.flags & FLAG_MOTOR_BLOCKED),
            barometer_dead=bool(self.flags & FLAG_BAROMETER_DEAD),
        )


@dataclass(slots=True)
class BatteryState:
    relative_capacity: int
    voltage_v: float
    current_a: float
    temperature_c: float
    current_capacity_mah: int
    full_capacity_mah: int
    cell_voltages: list[float] = field(default_factory=list)

    @property
    def cell_voltage_deviation(self) -> float | None:
        """Spread between the highest and lowest present cell, in volts."""
        if not self.cell_voltages:
            return None
        return max(self.cell_voltages) - min(self.cell_voltages)


@dataclass(slots=True)
class PhotoMarker:
    photo_index: int
    filename: str | None = None


@dataclass(slots=True)
class AircraftMetadata:
    """Aircraft identity, used to cross-check the Details area."""
    drone_type: int
    app_type: int
    app_version: str
    aircraft_serial: str
    aircraft_name: str
    camera_serial: str
    rc_serial: str
    battery_serial: str


@dataclass(slots=True)
class ClockSync:
    epoch_ms: int

    @property
    def wall_time(self) -> datetime:
        return datetime.fromtimestamp(self.epoch_ms / 1000, tz=timezone.utc)


@dataclass(slots=True)
class KeyStorage:
    key_range: KeyRange


@dataclass(slots=True)
class Unrecognized:
    type: int
    raw: bytes


Decoded = Union[
    Telemetry, BatteryState, PhotoMarker, AircraftMetadata,
    ClockSync, KeyStorage, Unrecognized,
]


def _cstr(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="ignore").strip()


def _require(payload: bytes, size: int, name: str) -> None:
    if len(payload) < size:
        raise DecodeError(f"{name} payload too short: {len(payload)} < {size} bytes")


def decode_telemetry(payload: bytes) -> Telemetry:
    _require(payload, TELEMETRY_SIZE, "Telemetry")
    (tick, lat_raw, lon_raw, height, vx, vy, vz, yaw, gimbal_pitch,
     battery, sats, signal, flags) = struct.unpack_from(TELEMETRY_FMT, payload, 0)

    lat = lon = None
    if flags & FLAG_GPS_VALID:
        lat = lat_raw * COORD_SCALE
        lon = lon_raw * COORD_SCALE
        if not is_valid_coordinate(lat, lon):
            raise DecodeError(f"Telemetry coordinates out of range: ({lat}, {lon})")
        if abs(lat) < NULL_ISLAND_EPSILON and abs(lon) < NULL_ISLAND_EPSILON:
            logger.debug("Telemetry at tick %d reports (0, 0), treating as no fix", tick)
            lat = lon = None

    return Telemetry(
        tick_ms=tick,
        lat=lat,
        lon=lon,
        altitude_m=height * HEIGHT_SCALE,
        speed_mps=math.hypot(vx, vy) * SPEED_SCALE,
        vertical_speed_mps=vz * SPEED_SCALE,
        heading_deg=(yaw * ANGLE_SCALE) % 360.0,
        gimbal_pitch_deg=gimbal_pitch * ANGLE_SCALE,
        battery_percent=None if battery == UNAVAILABLE_U8 else battery,
        satellite_count=sats,
        signal_strength=None if signal == UNAVAILABLE_U8 else signal,
        flags=flags,
    )


def decode_clock(payload: bytes) -> ClockSync:
    _require(payload, CLOCK_SIZE, "Clock")
    _, _, _, epoch_ms = struct.unpack_from(CLOCK_FMT, payload, 0)
    return ClockSync(epoch_ms=epoch_ms)


def decode_battery(payload: bytes) -> BatteryState:
    _require(payload, BATTERY_SIZE, "Battery")
    vals = struct.unpack_from(BATTERY_FMT, payload, 0)
    relative, pack_mv, current_mah, full_mah = vals[0:4]
    current_ma = vals[7]
    cells_mv = vals[8:14]
    temperature = vals[16]
    return BatteryState(
        relative_capacity=relative,
        voltage_v=pack_mv * MILLI,
        current_a=current_ma * MILLI,
        temperature_c=temperature * CENTI,
        current_capacity_mah=current_mah,
        full_capacity_mah=full_mah,
        cell_voltages=[mv * MILLI for mv in cells_mv if mv > 0],
    )


def decode_metadata(payload: bytes) -> AircraftMetadata:
    _require(payload, METADATA_SIZE, "Metadata")
    (drone_type, app_type, ver_l, ver_m, ver_h, aircraft_sn, aircraft_name,
     _activated, camera_sn, rc_sn, battery_sn) = struct.unpack_from(METADATA_FMT, payload, 0)
    return AircraftMetadata(
        drone_type=drone_type,
        app_type=app_type,
        app_version=f"{ver_h}.{ver_m}.{ver_l}",
        aircraft_serial=_cstr(aircraft_sn),
        aircraft_name=_cstr(aircraft_name),
        camera_serial=_cstr(camera_sn),
        rc_serial=_cstr(rc_sn),
        battery_serial=_cstr(battery_sn),
    )


def decode_photo_marker(payload: bytes) -> PhotoMarker:
    _require(payload, PHOTO_MARKER_SIZE, "Photo marker")
    index, name_len = struct.unpack_from(PHOTO_MARKER_FMT, payload, 0)
    raw_name = payload[PHOTO_MARKER_SIZE:PHOTO_MARKER_SIZE + name_len]
    return PhotoMarker(photo_index=index, filename=_cstr(raw_name) or None)


def decode_key_storage(payload: bytes) -> KeyStorage:
    _require(payload, KEY_STORAGE_SIZE, "Key storage")
    start, end, feature = struct.unpack_from(KEY_STORAGE_FMT, payload, 0)
    return KeyStorage(KeyRange(
        start_ms=start,
        end_ms=end,
        feature_point=feature,
        ciphertext=bytes(payload[KEY_STORAGE_SIZE:]),
    ))


DECODERS: dict[int, Callable[[bytes], Decoded]] = {
    RecordType.OSD: decode_telemetry,
    RecordType.CUSTOM: decode_clock,
    RecordType.CENTER_BATTERY: decode_battery,
    RecordType.RECOVER: decode_metadata,
    RecordType.CAMERA_SHOT: decode_photo_marker,
    RecordType.KEY_STORAGE: decode_key_storage,
}

# Record types that are stored without AES encryption in encrypted versions.
PLAINTEXT_TYPES = frozenset({RecordType.KEY_STORAGE})


def dispatch(record: Record, payload: bytes) -> Decoded:
    """Route a decoded payload to its type-specific decoder.

    Raises:
        DecodeError: the payload is too short or carries invalid values.
    """
    decoder = DECODERS.get(record.type)
    if decoder is None:
        logger.debug("Unrecognized record type 0x%02X (%d bytes)", record.type, len(payload))
        return Unrecognized(type=record.type, raw=bytes(payload))
    try:
        return decoder(payload)
    except struct.error as e:
        raise DecodeError(f"Record {record.index} type 0x{record.type:02X}: {e}") from e
