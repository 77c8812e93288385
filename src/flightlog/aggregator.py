"""Single-pass reduction of data points into flight statistics and issues.

Statistics:
- max altitude and max horizontal speed
- cumulative great-circle distance between consecutive valid fixes
- max distance from home (first valid fix)
- battery start/end/min and photo count

Issue rules (each issue key reported at most once per repeat interval):
- battery below 20% (warning) or 10% (error)
- fewer than 6 satellites while some are tracked (warning)
- signal strength 0 (warning)
- compass error, motor blocked, barometer dead (error)
"""

from __future__ import annotations

import logging

from flightlog.geo import GeoPoint, haversine_m
from flightlog.models import DataPoint, FlightIssue, FlightLogSummary, Severity

logger = logging.getLogger(__name__)

BATTERY_LOW_PERCENT = 20
BATTERY_CRITICAL_PERCENT = 10
MIN_SATELLITES = 6
DEFAULT_REPEAT_INTERVAL_MS = 10000


class FlightAggregator:
    """Consumes data points in order and produces a FlightLogSummary.

    Usage:
        agg = FlightAggregator()
        for point in points:
            agg.add(point)
        summary = agg.finish()
        agg.issues  # detected warnings and errors
    """

    def __init__(self, repeat_interval_ms: int = DEFAULT_REPEAT_INTERVAL_MS):
        self._repeat_interval_ms = repeat_interval_ms
        self._last_reported: dict[str, int] = {}
        self.issues: list[FlightIssue] = []

        self._count = 0
        self._first_offset: int | None = None
        self._last_offset: int | None = None
        self._max_altitude: float | None = None
        self._max_speed: float | None = None
        self._home: GeoPoint | None = None
        self._last_fix: GeoPoint | None = None
        self._fix_count = 0
        self._total_distance = 0.0
        self._max_distance = 0.0
        self._battery_start: int | None = None
        self._battery_end: int | None = None
        self._battery_min: int | None = None
        self._photos = 0

    def add(self, point: DataPoint) -> None:
        self._count += 1
        if self._first_offset is None:
            self._first_offset = point.timestamp_offset_ms
        self._last_offset = point.timestamp_offset_ms

        if point.altitude_m is not None:
            self._max_altitude = _max(self._max_altitude, point.altitude_m)
        if point.speed_mps is not None:
            self._max_speed = _max(self._max_speed, point.speed_mps)

        fix = point.location
        if fix is not None:
            self._fix_count += 1
            if self._home is None:
                self._home = fix
            if self._last_fix is not None:
                self._total_distance += haversine_m(self._last_fix, fix)
            self._max_distance = max(self._max_distance, haversine_m(self._home, fix))
            self._last_fix = fix

        battery = point.battery_percent
        if battery is not None:
            if self._battery_start is None:
                self._battery_start = battery
            self._battery_end = battery
            self._battery_min = battery if self._battery_min is None else min(self._battery_min, battery)

        if point.is_photo:
            self._photos += 1

        self._detect_issues(point)

    def _report(
        self, key: str, severity: Severity, category: str, message: str, point: DataPoint,
        **details,
    ) -> None:
        t = point.timestamp_offset_ms
        last = self._last_reported.get(key)
        if last is not None and t - last < self._repeat_interval_ms:
            return
        self._last_reported[key] = t
        logger.debug("Issue at %d ms: %s", t, message)
        self.issues.append(FlightIssue(
            severity=severity,
            category=category,
            message=message,
            timestamp_offset_ms=t,
            details=details,
        ))

    def _detect_issues(self, point: DataPoint) -> None:
        battery = point.battery_percent
        if battery is not None:
            if battery < BATTERY_CRITICAL_PERCENT:
                self._report("battery_critical", Severity.ERROR, "battery",
                             f"Critical battery: {battery}%", point, battery_percent=battery)
            elif battery < BATTERY_LOW_PERCENT:
                self._report("battery_low", Severity.WARNING, "battery",
                             f"Low battery: {battery}%", point, battery_percent=battery)

        sats = point.satellite_count
        if sats is not None and 0 < sats < MIN_SATELLITES:
            self._report("gps_weak", Severity.WARNING, "gps",
                         f"Weak GPS: {sats} satellites", point, satellite_count=sats)

        if point.signal_strength == 0:
            self._report("signal_lost", Severity.WARNING, "signal",
                         "Remote controller signal lost", point)

        if point.compass_error:
            self._report("compass_error", Severity.ERROR, "compass", "Compass error", point)
        if point.motor_blocked:
            self._report("motor_blocked", Severity.ERROR, "motor", "Motor blocked", point)
        if point.barometer_dead:
            self._report("barometer_dead", Severity.ERROR, "barometer",
                         "Barometer failure", point)

    def finish(self) -> FlightLogSummary:
        summary = FlightLogSummary(
            data_point_count=self._count,
            max_altitude_m=self._max_altitude,
            max_speed_mps=self._max_speed,
            battery_start_percent=self._battery_start,
            battery_end_percent=self._battery_end,
            battery_min_percent=self._battery_min,
            photo_count=self._photos,
            home_location=self._home,
            start_location=self._home,
        )
        if self._first_offset is not None:
            summary.duration_s = (self._last_offset - self._first_offset) / 1000.0
            if self._last_offset <= self._first_offset:
                self.issues.append(FlightIssue(
                    severity=Severity.WARNING,
                    category="timeline",
                    message="non-monotonic or zero-duration flight",
                    timestamp_offset_ms=self._last_offset,
                ))

        if self._fix_count >= 2:
            summary.total_distance_m = self._total_distance
            summary.max_distance_m = self._max_distance
            summary.end_location = self._last_fix
        return summary


def _max(current: float | None, value: float) -> float:
    return value if current is None else max(current, value)
