"""Per-record XOR descrambling of payloads (format version 6 and later).

Every scrambled payload starts with a key byte. An 8-byte keystream is the
CRC-64 of a 64-bit constant multiplied by the key byte, seeded with
(record_type + key) & 0xFF. The remaining payload bytes are XORed with the
keystream, repeating every 8 bytes.

CRC-64 is the reflected table-driven variant with polynomial
0x95AC9329AC4BC9B5 (table[1] == 0x7AD870C830358979).
"""

from __future__ import annotations

import struct

CRC64_POLY_REFLECTED = 0x95AC9329AC4BC9B5
KEYSTREAM_MULTIPLIER = 0x123456789ABCDEF0
KEYSTREAM_SIZE = 8
_MASK64 = 0xFFFFFFFFFFFFFFFF


def _build_crc64_table() -> tuple[int, ...]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ CRC64_POLY_REFLECTED
            else:
                crc >>= 1
        table.append(crc)
    return tuple(table)


CRC64_TABLE = _build_crc64_table()


def crc64(seed: int, data: bytes) -> int:
    """Table-driven reflected CRC-64 with an explicit seed."""
    crc = seed
    for b in data:
        crc = CRC64_TABLE[(b ^ crc) & 0xFF] ^ (crc >> 8)
    return crc


def keystream(record_type: int, key_byte: int) -> bytes:
    """8-byte XOR keystream for a record type and payload key byte."""
    block = struct.pack("<Q", (KEYSTREAM_MULTIPLIER * key_byte) & _MASK64)
    return struct.pack("<Q", crc64((record_type + key_byte) & 0xFF, block))


def _xor(data: bytes, stream: bytes) -> bytes:
    return bytes(b ^ stream[i % KEYSTREAM_SIZE] for i, b in enumerate(data))


def unscramble(record_type: int, payload: bytes) -> bytes:
    """Reverse the XOR obfuscation of one payload.

    The first byte is consumed as the key, so the output is one byte
    shorter than the input.
    """
    if not payload:
        return b""
    return _xor(payload[1:], keystream(record_type, payload[0]))


def scramble(record_type: int, key_byte: int, plain: bytes) -> bytes:
    """Apply the XOR obfuscation. unscramble(t, scramble(t, k, p)) == p."""
    return bytes([key_byte]) + _xor(plain, keystream(record_type, key_byte))
