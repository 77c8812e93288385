"""AES decryption of descrambled payloads with session-scoped keychains.

Encrypted payload layout (after descrambling):
  uint32   tick_ms     recording clock, plaintext, selects the keychain
  N bytes  ciphertext  AES-256-CBC, PKCS7 padded
"""

from __future__ import annotations

import struct

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from flightlog.errors import DecryptionError
from flightlog.keychain import Keychain

ENCRYPTED_PREFIX_FMT = "<I"
ENCRYPTED_PREFIX_SIZE = struct.calcsize(ENCRYPTED_PREFIX_FMT)
AES_BLOCK_BITS = 128


def decrypt(payload: bytes, keychain: Keychain) -> bytes:
    """Decrypt AES-256-CBC ciphertext and strip PKCS7 padding.

    Raises:
        DecryptionError: wrong block size or invalid padding.
    """
    if not payload or len(payload) % (AES_BLOCK_BITS // 8):
        raise DecryptionError(
            f"Ciphertext length {len(payload)} is not a multiple of the AES block size"
        )
    decryptor = Cipher(algorithms.AES(keychain.key), modes.CBC(keychain.iv)).decryptor()
    padded = decryptor.update(payload) + decryptor.finalize()
    unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError(f"Invalid padding after decryption: {e}") from e


def encrypt(plain: bytes, keychain: Keychain) -> bytes:
    """Inverse of decrypt, used to build encrypted fixture files."""
    padder = padding.PKCS7(AES_BLOCK_BITS).padder()
    padded = padder.update(plain) + padder.finalize()
    encryptor = Cipher(algorithms.AES(keychain.key), modes.CBC(keychain.iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def split_encrypted(payload: bytes) -> tuple[int, bytes]:
    """Split an encrypted payload into (tick_ms, ciphertext)."""
    if len(payload) < ENCRYPTED_PREFIX_SIZE:
        raise DecryptionError(f"Encrypted payload too short: {len(payload)} bytes")
    (tick_ms,) = struct.unpack_from(ENCRYPTED_PREFIX_FMT, payload, 0)
    return tick_ms, payload[ENCRYPTED_PREFIX_SIZE:]


class KeychainRing:
    """Keychains fetched for one file. Never shared between decodes."""

    def __init__(self, keychains: list[Keychain] | None = None):
        self._keychains = sorted(keychains or [], key=lambda k: k.start_ms)

    def __len__(self) -> int:
        return len(self._keychains)

    def find(self, timestamp_ms: int) -> Keychain:
        for keychain in self._keychains:
            if keychain.covers(timestamp_ms):
                return keychain
        raise DecryptionError(f"No keychain covers timestamp {timestamp_ms} ms")

    def decrypt_record(self, payload: bytes) -> bytes:
        """Decrypt one descrambled payload using the keychain for its tick."""
        tick_ms, ciphertext = split_encrypted(payload)
        return decrypt(ciphertext, self.find(tick_ms))
