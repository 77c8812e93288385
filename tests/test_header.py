"""Tests for header parsing and section location."""

import pytest

from flightlog.errors import FormatError
from flightlog.header import (
    HEADER_SIZE, HEADER_SIZE_LEGACY, AppVariant, build_header, parse_header,
)
from flightlog.sections import ByteRange, locate_sections


class TestParseHeader:
    def test_legacy_header(self):
        h = parse_header(build_header(500, 143, 3))
        assert h.version == 3
        assert h.header_size == HEADER_SIZE_LEGACY
        assert h.records_end == 500
        assert h.details_size == 143
        assert h.variant is AppVariant.RECORDS_FIRST
        assert not h.is_scrambled
        assert not h.is_encrypted
        assert h.length_width == 1
        assert h.device_serial == ""

    def test_scrambled_header_has_serial(self):
        h = parse_header(build_header(1000, 380, 8, device_serial="0K1CH2R00B0001"))
        assert h.header_size == HEADER_SIZE
        assert h.is_scrambled
        assert h.device_serial == "0K1CH2R00B0001"

    def test_details_first_from_v12(self):
        assert parse_header(build_header(1000, 380, 11)).variant is AppVariant.RECORDS_FIRST
        assert parse_header(build_header(1000, 380, 12)).variant is AppVariant.DETAILS_FIRST

    def test_v13_wide_lengths_and_encryption(self):
        h = parse_header(build_header(1000, 380, 13))
        assert h.is_encrypted
        assert h.length_width == 2

    def test_too_short(self):
        with pytest.raises(FormatError):
            parse_header(b"\x00" * 5)

    def test_v6_needs_full_header(self):
        data = build_header(1000, 380, 6)[:50]
        with pytest.raises(FormatError):
            parse_header(data)

    @pytest.mark.parametrize("version", [0, 15, 255])
    def test_unknown_version(self, version):
        data = build_header(1000, 0, 1)
        data = data[:10] + bytes([version]) + data[11:]
        with pytest.raises(FormatError, match="version"):
            parse_header(data)


class TestLocateSections:
    def test_records_first(self):
        h = parse_header(build_header(1012, 143, 3))
        layout = locate_sections(h, 1155)
        assert layout.records == ByteRange(12, 1012)
        assert layout.details == ByteRange(1012, 1155)

    def test_details_first(self):
        h = parse_header(build_header(2000, 380, 12))
        layout = locate_sections(h, 2000)
        assert layout.details == ByteRange(100, 480)
        assert layout.records == ByteRange(480, 2000)

    def test_records_beyond_file(self):
        h = parse_header(build_header(5000, 143, 3))
        with pytest.raises(FormatError, match="exceeds"):
            locate_sections(h, 1000)

    def test_records_end_before_details_end(self):
        h = parse_header(build_header(300, 380, 12))
        with pytest.raises(FormatError, match="Negative"):
            locate_sections(h, 2000)

    def test_records_end_inside_header(self):
        h = parse_header(build_header(50, 0, 8))
        with pytest.raises(FormatError):
            locate_sections(h, 2000)

    def test_empty_ranges_do_not_overlap(self):
        assert not ByteRange(10, 10).overlaps(ByteRange(5, 20))
        assert ByteRange(10, 30).overlaps(ByteRange(20, 40))
        assert not ByteRange(10, 20).overlaps(ByteRange(20, 40))
