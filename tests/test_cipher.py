"""Tests for AES payload decryption and keychain selection."""

import struct

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from flightlog.cipher import KeychainRing, decrypt, encrypt, split_encrypted
from flightlog.errors import DecryptionError
from flightlog.keychain import Keychain

K1 = Keychain(start_ms=0, end_ms=1000, key=b"\x11" * 32, iv=b"\x22" * 16)
K2 = Keychain(start_ms=1000, end_ms=5000, key=b"\x33" * 32, iv=b"\x44" * 16)


class TestDecrypt:
    def test_round_trip(self):
        plain = b"telemetry payload bytes"
        assert decrypt(encrypt(plain, K1), K1) == plain

    def test_block_multiple_input(self):
        plain = b"\x00" * 32
        ct = encrypt(plain, K1)
        assert len(ct) == 48
        assert decrypt(ct, K1) == plain

    def test_bad_block_size(self):
        with pytest.raises(DecryptionError, match="block size"):
            decrypt(b"\x00" * 15, K1)

    def test_empty_ciphertext(self):
        with pytest.raises(DecryptionError):
            decrypt(b"", K1)

    def test_invalid_padding(self):
        # A block ending in 0x00 is never valid PKCS7.
        block = b"\x05" * 15 + b"\x00"
        encryptor = Cipher(algorithms.AES(K1.key), modes.CBC(K1.iv)).encryptor()
        ct = encryptor.update(block) + encryptor.finalize()
        with pytest.raises(DecryptionError, match="padding"):
            decrypt(ct, K1)


class TestSplitEncrypted:
    def test_split(self):
        tick, ct = split_encrypted(struct.pack("<I", 1234) + b"abc")
        assert tick == 1234
        assert ct == b"abc"

    def test_too_short(self):
        with pytest.raises(DecryptionError):
            split_encrypted(b"\x01\x02")


class TestKeychainRing:
    def test_find_half_open_windows(self):
        ring = KeychainRing([K2, K1])
        assert len(ring) == 2
        assert ring.find(0) is K1
        assert ring.find(999) is K1
        assert ring.find(1000) is K2
        assert ring.find(4999) is K2

    def test_uncovered_timestamp(self):
        ring = KeychainRing([K1])
        with pytest.raises(DecryptionError, match="No keychain"):
            ring.find(1000)

    def test_empty_ring(self):
        with pytest.raises(DecryptionError):
            KeychainRing().find(0)

    def test_decrypt_record_uses_tick(self):
        ring = KeychainRing([K1, K2])
        payload = struct.pack("<I", 2500) + encrypt(b"hello", K2)
        assert ring.decrypt_record(payload) == b"hello"
