"""Tests for record type dispatch and payload decoders."""

import struct

import pytest

from flightlog.dispatcher import (
    FLAG_BAROMETER_DEAD, FLAG_COMPASS_ERROR, FLAG_GPS_VALID, FLAG_MOTOR_BLOCKED,
    FLAG_PHOTO, FLAG_VIDEO, TELEMETRY_FMT, AircraftMetadata, BatteryState,
    ClockSync, KeyStorage, PhotoMarker, Telemetry, Unrecognized, dispatch,
)
from flightlog.errors import DecodeError
from flightlog.records import Record, RecordType

import log_factory as lf


def _record(rtype, payload=b""):
    return Record(index=7, offset=0, type=rtype, length=len(payload),
                  payload=payload, end_marker=0xFF)


def _dispatch(rtype, payload):
    return dispatch(_record(rtype, payload), payload)


class TestTelemetry:
    def test_coordinate_scaling(self):
        payload = struct.pack(TELEMETRY_FMT, 500, 374221234, -1220841234, 0, 0, 0, 0,
                              0, 0, 50, 10, 90, FLAG_GPS_VALID)
        t = _dispatch(RecordType.OSD, payload)
        assert isinstance(t, Telemetry)
        assert t.tick_ms == 500
        assert t.lat == pytest.approx(37.4221234)
        assert t.lon == pytest.approx(-122.0841234)

    def test_scales_and_units(self):
        t = _dispatch(RecordType.OSD, lf.telemetry(
            0, lat=1.0, lon=2.0, height_dm=1234, vx=30, vy=40, vz=-15,
            yaw=-900, pitch=-450, battery=64, sats=9, signal=77,
        ))
        assert t.altitude_m == pytest.approx(123.4)
        assert t.speed_mps == pytest.approx(5.0)
        assert t.vertical_speed_mps == pytest.approx(-1.5)
        assert t.heading_deg == pytest.approx(270.0)
        assert t.gimbal_pitch_deg == pytest.approx(-45.0)
        assert t.battery_percent == 64
        assert t.satellite_count == 9
        assert t.signal_strength == 77

    def test_unavailable_values(self):
        t = _dispatch(RecordType.OSD, lf.telemetry(0, battery=0xFF, signal=0xFF))
        assert t.battery_percent is None
        assert t.signal_strength is None

    def test_null_island_is_no_fix(self):
        t = _dispatch(RecordType.OSD, lf.telemetry(0, lat=0.0, lon=0.0))
        assert t.lat is None and t.lon is None
        assert t.to_data_point(0).location is None

    def test_near_origin_on_one_axis_is_kept(self):
        t = _dispatch(RecordType.OSD, lf.telemetry(0, lat=0.0005, lon=8.5))
        assert t.lat == pytest.approx(0.0005)
        assert t.lon == pytest.approx(8.5)

    def test_no_gps_fix(self):
        t = _dispatch(RecordType.OSD, lf.telemetry(0, lat=47.0, lon=8.0, flags=0))
        assert t.lat is None
        assert t.to_data_point(0).location is None

    def test_out_of_range_latitude(self):
        payload = struct.pack(TELEMETRY_FMT, 0, 950000000, 0, 0, 0, 0, 0, 0, 0,
                              50, 10, 90, FLAG_GPS_VALID)
        with pytest.raises(DecodeError, match="out of range"):
            _dispatch(RecordType.OSD, payload)

    def test_short_payload(self):
        with pytest.raises(DecodeError, match="too short"):
            _dispatch(RecordType.OSD, b"\x00" * 10)

    def test_flags_to_data_point(self):
        flags = (FLAG_GPS_VALID | FLAG_PHOTO | FLAG_VIDEO | FLAG_COMPASS_ERROR
                 | FLAG_MOTOR_BLOCKED | FLAG_BAROMETER_DEAD)
        point = _dispatch(RecordType.OSD, lf.telemetry(0, flags=flags)).to_data_point(250)
        assert point.timestamp_offset_ms == 250
        assert point.is_photo and point.is_video_recording
        assert point.compass_error and point.motor_blocked and point.barometer_dead


class TestOtherRecords:
    def test_clock(self):
        c = _dispatch(RecordType.CUSTOM, lf.clock(1684059751000))
        assert isinstance(c, ClockSync)
        assert c.wall_time.year == 2023
        assert c.wall_time.tzinfo is not None

    def test_battery(self):
        b = _dispatch(RecordType.CENTER_BATTERY, lf.battery())
        assert isinstance(b, BatteryState)
        assert b.relative_capacity == 75
        assert b.voltage_v == pytest.approx(15.4)
        assert b.current_a == pytest.approx(-2.5)
        assert b.temperature_c == pytest.approx(31.5)
        assert b.cell_voltages == pytest.approx([3.85] * 4)
        assert b.current_capacity_mah == 4000
        assert b.full_capacity_mah == 5000
        assert b.cell_voltage_deviation == pytest.approx(0.0)

    def test_battery_cell_deviation(self):
        b = _dispatch(RecordType.CENTER_BATTERY, lf.battery(cells_mv=(4100, 4050, 4120, 0, 0, 0)))
        assert b.cell_voltages == pytest.approx([4.1, 4.05, 4.12])
        assert b.cell_voltage_deviation == pytest.approx(0.07)

    def test_battery_without_cells(self):
        b = _dispatch(RecordType.CENTER_BATTERY, lf.battery(cells_mv=(0,) * 6))
        assert b.cell_voltages == []
        assert b.cell_voltage_deviation is None

    def test_metadata(self):
        m = _dispatch(RecordType.RECOVER, lf.metadata("SN123", "Mavic 3", "BATT9"))
        assert isinstance(m, AircraftMetadata)
        assert m.aircraft_serial == "SN123"
        assert m.aircraft_name == "Mavic 3"
        assert m.battery_serial == "BATT9"
        assert m.app_version == "1.2.3"

    def test_photo_marker(self):
        p = _dispatch(RecordType.CAMERA_SHOT, lf.photo(12, "DJI_0012.JPG"))
        assert p == PhotoMarker(photo_index=12, filename="DJI_0012.JPG")

    def test_photo_marker_without_name(self):
        assert _dispatch(RecordType.CAMERA_SHOT, lf.photo(3)).filename is None

    def test_key_storage(self):
        k = _dispatch(RecordType.KEY_STORAGE, lf.key_storage(100, 200, 4, b"\x09" * 32))
        assert isinstance(k, KeyStorage)
        assert k.key_range.start_ms == 100
        assert k.key_range.end_ms == 200
        assert k.key_range.feature_point == 4
        assert k.key_range.ciphertext == b"\x09" * 32

    def test_unrecognized(self):
        u = _dispatch(RecordType.GIMBAL, b"\x01\x02")
        assert u == Unrecognized(type=RecordType.GIMBAL, raw=b"\x01\x02")

    def test_unknown_type_value(self):
        assert isinstance(_dispatch(0x77, b""), Unrecognized)
