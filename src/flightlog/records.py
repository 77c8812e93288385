"""Record stream reader for the Records area.

Record frame:
  uint8         type
  uint8/uint16  length (2 bytes from format version 13)
  N bytes       payload
  uint8         end marker, always 0xFF

A bad end marker triggers forward resynchronization: the reader looks for
the next plausible record boundary within a bounded window. The end of the
range and the start of thumbnail data both count as boundaries. Recovered
corruption becomes a warning; unrecoverable corruption ends the stream
with CorruptRecordError after all earlier records were yielded.
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterator
from dataclasses import dataclass
from enum import IntEnum

from flightlog.errors import CorruptRecordError
from flightlog.models import FlightIssue, Severity
from flightlog.sections import ByteRange

logger = logging.getLogger(__name__)

END_MARKER = 0xFF
DEFAULT_RESYNC_WINDOW = 4096


class RecordType(IntEnum):
    OSD = 0x01           # telemetry
    HOME = 0x02
    GIMBAL = 0x03
    RC = 0x04
    CUSTOM = 0x05        # wall clock
    DEFORM = 0x06
    CENTER_BATTERY = 0x07
    SMART_BATTERY = 0x08
    APP_TIP = 0x09
    APP_WARN = 0x0A
    RC_GPS = 0x0B
    RC_DEBUG = 0x0C
    RECOVER = 0x0D       # aircraft metadata
    APP_GPS = 0x0E
    FIRMWARE = 0x0F
    OFDM_DEBUG = 0x10
    VISION_GROUP = 0x11
    VISION_WARN = 0x12
    MC_PARAM = 0x13
    APP_OPERATION = 0x14
    APP_SER_WARN = 0x18
    CAMERA_SHOT = 0x19   # photo marker
    COMPONENT = 0x28
    KEY_STORAGE = 0x38
    JPEG = 0x39          # embedded thumbnails, ends the record stream
    OTHER = 0xFE


KNOWN_RECORD_TYPES = frozenset(int(t) for t in RecordType)


@dataclass(slots=True)
class Record:
    """One framed record, payload still scrambled."""
    index: int
    offset: int
    type: int
    length: int
    payload: bytes
    end_marker: int
    recovered: bool = False


def encode_record(record_type: int, payload: bytes, length_width: int = 1) -> bytes:
    """Frame a payload. Used to build fixture files."""
    fmt = "<BH" if length_width == 2 else "<BB"
    return struct.pack(fmt, record_type, len(payload)) + payload + bytes([END_MARKER])


class RecordReader:
    """Lazy, single-use iterator over the records of one file.

    Usage:
        reader = RecordReader(data, layout.records, header.length_width)
        for record in reader:
            ...
        reader.warnings  # resynchronization warnings
    """

    def __init__(
        self,
        data: bytes,
        records: ByteRange,
        length_width: int = 1,
        resync_window: int = DEFAULT_RESYNC_WINDOW,
    ):
        self._data = data
        self._start = records.start
        self._end = records.end
        self._width = length_width
        self._window = resync_window
        self._started = False
        self.warnings: list[FlightIssue] = []
        self.bytes_skipped = 0

    def __iter__(self) -> Iterator[Record]:
        if self._started:
            raise RuntimeError("RecordReader can only be iterated once")
        self._started = True
        return self._records()

    def _frame_at(self, pos: int) -> tuple[int, int] | None:
        """(length, end-marker offset), or None if the frame leaves the range."""
        header_len = 1 + self._width
        if pos + header_len > self._end:
            return None
        if self._width == 2:
            (length,) = struct.unpack_from("<H", self._data, pos + 1)
        else:
            length = self._data[pos + 1]
        marker = pos + header_len + length
        if marker >= self._end:
            return None
        return length, marker

    def _is_boundary(self, pos: int, lookahead: int = 1) -> bool:
        """True if a well-framed record (and its successor) starts at pos."""
        if pos == self._end:
            return True
        if pos > self._end:
            return False
        rtype = self._data[pos]
        if rtype == RecordType.JPEG:
            return True
        if rtype not in KNOWN_RECORD_TYPES:
            return False
        frame = self._frame_at(pos)
        if frame is None or self._data[frame[1]] != END_MARKER:
            return False
        if lookahead == 0:
            return True
        return self._is_boundary(frame[1] + 1, lookahead - 1)

    def _scan(self, pos: int) -> int | None:
        limit = min(pos + self._window, self._end)
        for candidate in range(pos, limit):
            if self._data[candidate] in KNOWN_RECORD_TYPES and self._is_boundary(candidate):
                return candidate
        if limit == self._end:
            return self._end
        return None

    def _warn(self, index: int, offset: int, skipped: int) -> None:
        logger.warning(
            "Corrupt record %d at offset %d recovered (%d bytes skipped)",
            index, offset, skipped,
        )
        self.warnings.append(FlightIssue(
            severity=Severity.WARNING,
            category="record",
            message="corrupt record recovered",
            record_index=index,
            details={"offset": offset, "bytes_skipped": skipped},
        ))

    def _make(self, index: int, pos: int, length: int, marker: int, recovered: bool) -> Record:
        payload_start = pos + 1 + self._width
        return Record(
            index=index,
            offset=pos,
            type=self._data[pos],
            length=length,
            payload=bytes(self._data[payload_start:marker]),
            end_marker=self._data[marker],
            recovered=recovered,
        )

    def _records(self) -> Iterator[Record]:
        pos = self._start
        index = 0
        while pos < self._end:
            if self._data[pos] == RecordType.JPEG:
                logger.debug("Thumbnail data at offset %d ends record stream", pos)
                return

            frame = self._frame_at(pos)
            if frame is not None:
                length, marker = frame
                if self._data[marker] == END_MARKER:
                    yield self._make(index, pos, length, marker, recovered=False)
                    pos = marker + 1
                    index += 1
                    continue
                # Only the marker byte is bad: keep the record.
                if self._is_boundary(marker + 1):
                    self._warn(index, pos, 0)
                    yield self._make(index, pos, length, marker, recovered=True)
                    pos = marker + 1
                    index += 1
                    continue

            boundary = self._scan(pos + 1)
            if boundary is None:
                raise CorruptRecordError(
                    f"Corrupt record {index} at offset {pos}: no record boundary "
                    f"within {self._window} bytes",
                    record_index=index,
                    offset=pos,
                )
            self._warn(index, pos, boundary - pos)
            self.bytes_skipped += boundary - pos
            pos = boundary
            index += 1
