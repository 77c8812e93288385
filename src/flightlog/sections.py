"""Byte ranges of the Details and Records areas."""

from __future__ import annotations

from dataclasses import dataclass

from flightlog.errors import FormatError
from flightlog.header import AppVariant, Header


@dataclass(frozen=True, slots=True)
class ByteRange:
    """Half-open [start, end) range of absolute file offsets."""
    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start

    def overlaps(self, other: ByteRange) -> bool:
        if len(self) == 0 or len(other) == 0:
            return False
        return self.start < other.end and other.start < self.end


@dataclass(frozen=True, slots=True)
class SectionLayout:
    records: ByteRange
    details: ByteRange


def locate_sections(header: Header, total_length: int) -> SectionLayout:
    """Compute Records/Details ranges from header fields and app variant.

    Raises:
        FormatError: a range is negative, reaches into the header, exceeds
            the file, or the two ranges overlap.
    """
    hs = header.header_size
    if header.variant is AppVariant.DETAILS_FIRST:
        details = ByteRange(hs, hs + header.details_size)
        records = ByteRange(details.end, header.records_end)
    else:
        records = ByteRange(hs, header.records_end)
        details = ByteRange(header.records_end, header.records_end + header.details_size)

    for name, rng in (("records", records), ("details", details)):
        if rng.end < rng.start:
            raise FormatError(f"Negative {name} range: [{rng.start}, {rng.end})")
        if rng.start < hs:
            raise FormatError(f"{name} range starts inside header at {rng.start}")
        if rng.end > total_length:
            raise FormatError(
                f"{name} range [{rng.start}, {rng.end}) exceeds file length {total_length}"
            )

    if records.overlaps(details):
        raise FormatError(f"Records {records} overlap details {details}")

    return SectionLayout(records=records, details=details)
