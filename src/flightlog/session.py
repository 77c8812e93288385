"""Decode session: runs the full pipeline for one flight-log file.

Pipeline:
  header -> section layout -> record stream -> descramble -> (decrypt)
  -> dispatch -> data points -> aggregator -> DecodeResult

Encrypted files (version 13+) get a key-discovery pre-pass over the record
stream: key-storage records are stored unencrypted, so their timeline
windows can be collected and exchanged for keychains before the main pass.
Keychains live on the session only and are never shared between files.

Usage:
    result = await decode_flight_log(data, filename="DJIFlightRecord.txt")
    result = decode_flight_log_sync(data, config=DecoderConfig(...))
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from datetime import datetime, timezone

from flightlog.aggregator import FlightAggregator
from flightlog.cipher import KeychainRing
from flightlog.config import DecoderConfig
from flightlog.descrambler import unscramble
from flightlog.details import FlightDetails, parse_details
from flightlog.dispatcher import (
    PLAINTEXT_TYPES, AircraftMetadata, BatteryState, ClockSync,
    PhotoMarker, Telemetry, decode_key_storage, dispatch,
)
from flightlog.errors import (
    CorruptRecordError, DecodeCancelledError, DecodeError, DecryptionError,
    EmptyKeychainError, NetworkError,
)
from flightlog.header import Header, parse_header
from flightlog.keychain import DeviceInfo, KeychainClient, KeyRange
from flightlog.models import DataPoint, DecodeResult, FlightIssue, Severity
from flightlog.records import Record, RecordReader, RecordType
from flightlog.sections import SectionLayout, locate_sections

logger = logging.getLogger(__name__)

# DJIFlightRecord_2023-05-14_[10-22-31].txt
FILENAME_TIME_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})_\[(\d{2})-(\d{2})-(\d{2})\]")


def flight_start_from_filename(filename: str | None) -> datetime | None:
    if not filename:
        return None
    m = FILENAME_TIME_RE.search(filename)
    if m is None:
        return None
    try:
        return datetime(*(int(g) for g in m.groups()), tzinfo=timezone.utc)
    except ValueError:
        return None


def _issue(severity: Severity, category: str, exc: Exception, record_index: int | None = None,
           timestamp_offset_ms: int | None = None) -> FlightIssue:
    details = {"error": type(exc).__name__}
    return FlightIssue(
        severity=severity,
        category=category,
        message=str(exc),
        timestamp_offset_ms=timestamp_offset_ms,
        record_index=record_index,
        details=details,
    )


class DecodeSession:
    """State for decoding one file. Create one per file."""

    def __init__(
        self,
        data: bytes,
        filename: str | None = None,
        config: DecoderConfig | None = None,
        cancel: threading.Event | None = None,
        client=None,
    ):
        self._data = data
        self._filename = filename
        self._config = config or DecoderConfig()
        self._cancel = cancel
        self._client = client

        self.header: Header | None = None
        self.layout: SectionLayout | None = None
        self.details: FlightDetails | None = None
        self.keychains = KeychainRing()

        self._aggregator = FlightAggregator(self._config.issue_repeat_interval_ms)
        self._points: list[DataPoint] = []
        self._pending: DataPoint | None = None
        self._warnings: list[FlightIssue] = []
        self._errors: list[FlightIssue] = []

        self._first_tick: int | None = None
        self._last_offset = 0
        self._clock_warned = False
        self._battery: BatteryState | None = None
        self._battery_temp_min: float | None = None
        self._battery_temp_max: float | None = None
        self._metadata: AircraftMetadata | None = None
        self._clock: ClockSync | None = None
        self._decrypt_attempts = 0
        self._decrypt_failures = 0
        self._encrypted_records = 0

    async def run(self) -> DecodeResult:
        """Decode the whole file.

        Raises:
            FormatError: header or section ranges are malformed.
            KeychainError: keychains could not be fetched.
            DecryptionError: strict mode and too many records failed to decrypt.
        """
        self.header = parse_header(self._data)
        self.layout = locate_sections(self.header, len(self._data))
        details_range = self.layout.details
        self.details = parse_details(
            self._data[details_range.start:details_range.end], self.header.version,
        )
        logger.info(
            "Decoding %s: format v%d, %s, records %d bytes, details %d bytes",
            self._filename or "<buffer>", self.header.version, self.header.variant.value,
            len(self.layout.records), len(details_range),
        )

        if self.header.is_encrypted:
            await self._load_keychains()

        reader = RecordReader(
            self._data,
            self.layout.records,
            self.header.length_width,
            self._config.resync_window,
        )
        complete = True
        try:
            for record in reader:
                if self._cancel is not None and self._cancel.is_set():
                    logger.info("Decode cancelled before record %d", record.index)
                    self._errors.append(_issue(
                        Severity.ERROR, "cancelled",
                        DecodeCancelledError("decode cancelled"), record.index,
                    ))
                    complete = False
                    break
                self._process(record)
        except CorruptRecordError as e:
            logger.error("Record stream ended early: %s", e)
            self._errors.append(_issue(Severity.ERROR, "record", e, e.record_index))
            complete = False

        self._flush_pending()
        self._check_decrypt_failures()
        return self._result(reader, complete)

    async def _load_keychains(self) -> None:
        ranges = self._discover_key_ranges()
        if not ranges:
            if self._encrypted_records:
                raise EmptyKeychainError(
                    f"Encrypted log has {self._encrypted_records} encrypted records "
                    "and no key-storage records"
                )
            logger.warning("Encrypted log has no key-storage records")
            return
        client = self._client or KeychainClient(self._config.keychain)
        device = DeviceInfo(serial=self.header.device_serial, version=self.header.version)
        fetch = client.fetch_keychains(device, ranges)
        budget = self._config.decode_timeout_s
        try:
            keychains = await (fetch if budget is None else asyncio.wait_for(fetch, budget))
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Keychain exchange exceeded {budget}s") from e
        self.keychains = KeychainRing(keychains)

    def _discover_key_ranges(self) -> list[KeyRange]:
        reader = RecordReader(
            self._data,
            self.layout.records,
            self.header.length_width,
            self._config.resync_window,
        )
        ranges: list[KeyRange] = []
        try:
            for record in reader:
                if record.type not in PLAINTEXT_TYPES:
                    self._encrypted_records += 1
                if record.type != RecordType.KEY_STORAGE:
                    continue
                try:
                    ranges.append(decode_key_storage(self._payload_bytes(record)).key_range)
                except DecodeError as e:
                    logger.warning("Skipping key-storage record %d: %s", record.index, e)
        except CorruptRecordError as e:
            # Reported by the main pass.
            logger.debug("Key discovery stopped early: %s", e)
        logger.debug("Discovered %d key ranges", len(ranges))
        return ranges

    def _payload_bytes(self, record: Record) -> bytes:
        if self.header.is_scrambled:
            return unscramble(record.type, record.payload)
        return record.payload

    def _process(self, record: Record) -> None:
        payload = self._payload_bytes(record)

        if self.header.is_encrypted and record.type not in PLAINTEXT_TYPES:
            self._decrypt_attempts += 1
            try:
                payload = self.keychains.decrypt_record(payload)
            except DecryptionError as e:
                self._decrypt_failures += 1
                logger.debug("Record %d not decrypted: %s", record.index, e)
                self._warnings.append(_issue(Severity.WARNING, "decryption", e, record.index))
                return

        try:
            decoded = dispatch(record, payload)
        except DecodeError as e:
            logger.warning("Record %d skipped: %s", record.index, e)
            self._warnings.append(_issue(Severity.WARNING, "decode", e, record.index))
            return

        if isinstance(decoded, Telemetry):
            self._on_telemetry(decoded, record)
        elif isinstance(decoded, BatteryState):
            self._on_battery(decoded)
        elif isinstance(decoded, PhotoMarker):
            self._on_photo(decoded)
        elif isinstance(decoded, AircraftMetadata):
            self._metadata = decoded
        elif isinstance(decoded, ClockSync):
            if self._clock is None:
                self._clock = decoded

    def _on_telemetry(self, telemetry: Telemetry, record: Record) -> None:
        if self._first_tick is None:
            self._first_tick = telemetry.tick_ms
        offset = telemetry.tick_ms - self._first_tick
        if offset < self._last_offset:
            if not self._clock_warned:
                self._clock_warned = True
                self._warnings.append(FlightIssue(
                    severity=Severity.WARNING,
                    category="timeline",
                    message="telemetry clock went backwards",
                    timestamp_offset_ms=self._last_offset,
                    record_index=record.index,
                    details={"tick_ms": telemetry.tick_ms},
                ))
            offset = self._last_offset
        self._last_offset = offset

        point = telemetry.to_data_point(offset)
        battery = self._battery
        if battery is not None:
            point.battery_voltage = battery.voltage_v
            point.battery_current = battery.current_a
            point.battery_temperature = battery.temperature_c
            point.battery_temperature_min = self._battery_temp_min
            point.battery_temperature_max = self._battery_temp_max
            point.battery_cell_voltages = list(battery.cell_voltages)
            point.battery_cell_voltage_deviation = battery.cell_voltage_deviation
            point.battery_current_capacity = battery.current_capacity_mah
            point.battery_full_capacity = battery.full_capacity_mah
            if point.battery_percent is None:
                point.battery_percent = battery.relative_capacity

        self._flush_pending()
        self._pending = point

    def _on_battery(self, battery: BatteryState) -> None:
        t = battery.temperature_c
        if self._battery_temp_min is None or t < self._battery_temp_min:
            self._battery_temp_min = t
        if self._battery_temp_max is None or t > self._battery_temp_max:
            self._battery_temp_max = t
        self._battery = battery

    def _on_photo(self, marker: PhotoMarker) -> None:
        if self._pending is None:
            logger.debug("Photo marker %d before any telemetry", marker.photo_index)
            return
        self._pending.is_photo = True
        if marker.filename:
            self._pending.photo_filename = marker.filename

    def _flush_pending(self) -> None:
        if self._pending is None:
            return
        self._points.append(self._pending)
        self._aggregator.add(self._pending)
        self._pending = None

    def _check_decrypt_failures(self) -> None:
        if not self._decrypt_attempts:
            return
        ratio = self._decrypt_failures / self._decrypt_attempts
        if ratio <= self._config.max_decrypt_failure_ratio:
            return
        err = DecryptionError(
            f"{self._decrypt_failures} of {self._decrypt_attempts} records failed to decrypt"
        )
        if self._config.strict_decryption:
            raise err
        logger.error("%s", err)
        self._errors.append(_issue(Severity.ERROR, "decryption", err))

    def _flight_start(self) -> datetime | None:
        if self._clock is not None:
            return self._clock.wall_time
        if self.details is not None and self.details.start_time is not None:
            return self.details.start_time
        return flight_start_from_filename(self._filename)

    def _cross_validated(self) -> bool:
        details = self.details
        if details is None or not details.complete or not details.aircraft_serial:
            return False
        candidates = [s for s in (
            self.header.device_serial,
            self._metadata.aircraft_serial if self._metadata else "",
        ) if s]
        return bool(candidates) and all(s == details.aircraft_serial for s in candidates)

    def _result(self, reader: RecordReader, complete: bool) -> DecodeResult:
        summary = self._aggregator.finish()
        for issue in self._aggregator.issues:
            if issue.severity is Severity.ERROR:
                self._errors.append(issue)
            else:
                self._warnings.append(issue)
        warnings = reader.warnings + self._warnings

        details = self.details
        meta = self._metadata
        summary.filename = self._filename
        summary.flight_start = self._flight_start()
        summary.format_version = self.header.version
        summary.drone_model = (meta and meta.aircraft_name) or details.aircraft_name or None
        summary.aircraft_serial = (
            (meta and meta.aircraft_serial) or details.aircraft_serial
            or self.header.device_serial or None
        )
        summary.battery_serial = (meta and meta.battery_serial) or details.battery_serial or None
        summary.warning_count = len(warnings)
        summary.error_count = len(self._errors)
        summary.complete = complete
        summary.cross_validated = self._cross_validated()

        logger.info(
            "Decoded %d data points (%d warnings, %d errors)",
            summary.data_point_count, summary.warning_count, summary.error_count,
        )
        return DecodeResult(
            summary=summary,
            data_points=self._points,
            warnings=warnings,
            errors=self._errors,
        )


async def decode_flight_log(
    data: bytes,
    filename: str | None = None,
    config: DecoderConfig | None = None,
    cancel: threading.Event | None = None,
    client=None,
) -> DecodeResult:
    """Decode one flight-log buffer.

    Args:
        data: complete file contents.
        filename: original file name, used as a flight start fallback.
        config: decoder configuration; defaults apply when omitted.
        cancel: checked between records; when set, the partial result is returned.
        client: keychain client override (anything with an async
            fetch_keychains(device, ranges)).
    """
    session = DecodeSession(data, filename, config, cancel, client)
    return await session.run()


def decode_flight_log_sync(
    data: bytes,
    filename: str | None = None,
    config: DecoderConfig | None = None,
    cancel: threading.Event | None = None,
    client=None,
) -> DecodeResult:
    """Blocking wrapper around decode_flight_log."""
    return asyncio.run(decode_flight_log(data, filename, config, cancel, client))
