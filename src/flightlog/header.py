"""Fixed-size leading header of a flight-log file.

Header layout (little-endian):
  offset 0   uint64  records_end   absolute end of the Records area
  offset 8   uint16  details_size  length of the Details area
  offset 10  uint8   version       format version
  offset 12  16s     device_serial NUL-padded ASCII (100-byte headers only)

Versions below 6 use a 12-byte header and plain payloads. From version 6
the header is 100 bytes and payloads are XOR scrambled. From version 12
the Details area precedes the Records area. From version 13 record lengths
are 2 bytes wide and payloads are additionally AES encrypted.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum

from flightlog.errors import FormatError

HEADER_FMT = "<QHB"
HEADER_SIZE_LEGACY = 12
HEADER_SIZE = 100

HEADER_SERIAL_OFFSET = 12
HEADER_SERIAL_LENGTH = 16

MIN_VERSION = 1
MAX_VERSION = 14

SCRAMBLED_SINCE = 6
DETAILS_FIRST_SINCE = 12
WIDE_LENGTH_SINCE = 13
ENCRYPTED_SINCE = 13


class AppVariant(Enum):
    """Recording application family; decides section ordering."""
    DETAILS_FIRST = "details_first"  # VariantA
    RECORDS_FIRST = "records_first"  # VariantB


@dataclass(frozen=True, slots=True)
class Header:
    """Parsed file header."""
    records_end: int
    details_size: int
    version: int
    variant: AppVariant
    device_serial: str
    header_size: int

    @property
    def is_scrambled(self) -> bool:
        return self.version >= SCRAMBLED_SINCE

    @property
    def is_encrypted(self) -> bool:
        return self.version >= ENCRYPTED_SINCE

    @property
    def length_width(self) -> int:
        """Width in bytes of each record's length field."""
        return 2 if self.version >= WIDE_LENGTH_SINCE else 1


def variant_for_version(version: int) -> AppVariant:
    if version >= DETAILS_FIRST_SINCE:
        return AppVariant.DETAILS_FIRST
    return AppVariant.RECORDS_FIRST


def parse_header(data: bytes) -> Header:
    """Parse the leading header.

    Raises:
        FormatError: buffer shorter than the header, or unknown version.
    """
    if len(data) < HEADER_SIZE_LEGACY:
        raise FormatError(
            f"File too short for header: {len(data)} < {HEADER_SIZE_LEGACY} bytes"
        )

    records_end, details_size, version = struct.unpack_from(HEADER_FMT, data, 0)
    if not MIN_VERSION <= version <= MAX_VERSION:
        raise FormatError(f"Unsupported format version: {version}")

    if version < SCRAMBLED_SINCE:
        return Header(
            records_end=records_end,
            details_size=details_size,
            version=version,
            variant=variant_for_version(version),
            device_serial="",
            header_size=HEADER_SIZE_LEGACY,
        )

    if len(data) < HEADER_SIZE:
        raise FormatError(
            f"File too short for v{version} header: {len(data)} < {HEADER_SIZE} bytes"
        )

    raw_serial = data[HEADER_SERIAL_OFFSET:HEADER_SERIAL_OFFSET + HEADER_SERIAL_LENGTH]
    serial = raw_serial.split(b"\x00", 1)[0].decode("ascii", errors="ignore").strip()

    return Header(
        records_end=records_end,
        details_size=details_size,
        version=version,
        variant=variant_for_version(version),
        device_serial=serial,
        header_size=HEADER_SIZE,
    )


def build_header(
    records_end: int,
    details_size: int,
    version: int,
    device_serial: str = "",
) -> bytes:
    """Encode a header. Inverse of parse_header, used to write fixtures."""
    head = struct.pack(HEADER_FMT, records_end, details_size, version)
    if version < SCRAMBLED_SINCE:
        return head.ljust(HEADER_SIZE_LEGACY, b"\x00")
    serial = device_serial.encode("ascii")[:HEADER_SERIAL_LENGTH]
    head = head.ljust(HEADER_SERIAL_OFFSET, b"\x00") + serial.ljust(HEADER_SERIAL_LENGTH, b"\x00")
    return head.ljust(HEADER_SIZE, b"\x00")
