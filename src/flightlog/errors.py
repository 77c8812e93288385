"""Exception hierarchy for flight-log decoding.

Structural failures (FormatError, unrecoverable CorruptRecordError) abort a
decode. Content-level failures (DecodeError, single DecryptionError) are
raised where they occur and downgraded to warnings by the decode session.
"""

from __future__ import annotations


class FlightLogError(Exception):
    """Base class for all decoder errors."""


class FormatError(FlightLogError):
    """Malformed header or section ranges outside the file."""


class CorruptRecordError(FlightLogError):
    """A record end marker did not match and no boundary could be found."""

    def __init__(self, message: str, record_index: int, offset: int):
        super().__init__(message)
        self.record_index = record_index
        self.offset = offset


class DecodeError(FlightLogError):
    """A single record payload could not be decoded."""


class DecryptionError(FlightLogError):
    """AES integrity/padding failure, or no keychain covers the record."""


class KeychainError(FlightLogError):
    """Base class for keychain service failures."""


class ApiKeyError(KeychainError):
    """The keychain service rejected the credential. Never retried."""


class NetworkError(KeychainError):
    """The keychain service was unreachable or timed out."""


class EmptyKeychainError(KeychainError):
    """The service answered but returned no usable keychain."""


class DecodeCancelledError(FlightLogError):
    """The caller cancelled the decode between records."""
