"""Decoder output types: data points, issues, summary and result."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from flightlog.geo import GeoPoint


class Severity(Enum):
    WARNING = "warning"
    ERROR = "error"


@dataclass(slots=True)
class FlightIssue:
    """A warning or error recorded while decoding or analysing a flight."""
    severity: Severity
    category: str   # e.g. "record", "battery", "gps", "signal", "decryption"
    message: str
    timestamp_offset_ms: int | None = None
    record_index: int | None = None
    details: dict = field(default_factory=dict)


@dataclass(slots=True)
class DataPoint:
    """Flight state at one telemetry timestamp."""
    timestamp_offset_ms: int
    lat: float | None = None
    lon: float | None = None
    altitude_m: float | None = None
    speed_mps: float | None = None
    heading_deg: float | None = None
    gimbal_pitch_deg: float | None = None
    battery_percent: int | None = None
    satellite_count: int | None = None
    signal_strength: int | None = None
    battery_voltage: float | None = None      # V
    battery_current: float | None = None      # A, negative while discharging
    battery_temperature: float | None = None  # deg C
    battery_cell_voltages: list[float] | None = None
    battery_cell_voltage_deviation: float | None = None  # V, max - min cell
    battery_current_capacity: int | None = None  # mAh
    battery_full_capacity: int | None = None     # mAh
    battery_temperature_min: float | None = None  # deg C, lowest so far
    battery_temperature_max: float | None = None  # deg C, highest so far
    is_photo: bool = False
    is_video_recording: bool = False
    photo_filename: str | None = None
    compass_error: bool = False
    motor_blocked: bool = False
    barometer_dead: bool = False

    @property
    def location(self) -> GeoPoint | None:
        if self.lat is None or self.lon is None:
            return None
        return GeoPoint(lat=self.lat, lon=self.lon)


@dataclass(slots=True)
class FlightLogSummary:
    """Flight statistics reduced from the data-point sequence."""
    filename: str | None = None
    flight_start: datetime | None = None
    duration_s: float | None = None
    max_altitude_m: float | None = None
    max_distance_m: float | None = None   # furthest point from home
    total_distance_m: float | None = None
    max_speed_mps: float | None = None
    home_location: GeoPoint | None = None
    start_location: GeoPoint | None = None
    end_location: GeoPoint | None = None
    battery_start_percent: int | None = None
    battery_end_percent: int | None = None
    battery_min_percent: int | None = None
    data_point_count: int = 0
    photo_count: int = 0
    drone_model: str | None = None
    aircraft_serial: str | None = None
    battery_serial: str | None = None
    format_version: int | None = None
    warning_count: int = 0
    error_count: int = 0
    complete: bool = True
    cross_validated: bool = False

    def report(self) -> str:
        def opt(value, fmt: str) -> str:
            return "n/a" if value is None else format(value, fmt)

        lines = [
            f"Flight Log: {self.filename or '<unnamed>'} (format v{self.format_version})",
            f"Start: {self.flight_start.isoformat() if self.flight_start else 'unknown'}",
            f"Duration: {opt(self.duration_s, '.1f')}s",
            f"Data Points: {self.data_point_count} | Photos: {self.photo_count}",
            f"Max Altitude: {opt(self.max_altitude_m, '.1f')} m",
            f"Max Speed: {opt(self.max_speed_mps, '.1f')} m/s",
            f"Distance: {opt(self.total_distance_m, '.0f')} m total, "
            f"{opt(self.max_distance_m, '.0f')} m max from home",
            f"Battery: {opt(self.battery_start_percent, 'd')}% -> "
            f"{opt(self.battery_end_percent, 'd')}%",
            f"Warnings: {self.warning_count} | Errors: {self.error_count}",
        ]
        if self.drone_model or self.aircraft_serial:
            lines.append(f"Aircraft: {self.drone_model or '?'} ({self.aircraft_serial or '?'})")
        if not self.complete:
            lines.append("  INCOMPLETE: decode stopped early")
        if not self.cross_validated:
            lines.append("  UNVERIFIED: field layout not cross-checked against Details area")
        return "\n".join(lines)


@dataclass(slots=True)
class DecodeResult:
    """Everything one decode produces."""
    summary: FlightLogSummary
    data_points: list[DataPoint] = field(default_factory=list)
    warnings: list[FlightIssue] = field(default_factory=list)
    errors: list[FlightIssue] = field(default_factory=list)
