"""Keychain service client for encrypted logs (format version 13 and later).

Encrypted files carry key-storage records describing timeline windows and
an opaque key ciphertext per window. The vendor service exchanges these for
AES key/IV pairs. This is the only part of the decoder that performs I/O.

Failure policy:
  ApiKeyError         credential or request rejected, not retried
  NetworkError        timeout, connection failure, 5xx/429, retried once
  EmptyKeychainError  service answered with nothing usable, not retried
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass

import aiohttp
from pydantic import SecretStr

from flightlog.config import KeychainConfig
from flightlog.errors import ApiKeyError, EmptyKeychainError, NetworkError

logger = logging.getLogger(__name__)

AES_KEY_SIZE = 32
AES_IV_SIZE = 16
MAX_ATTEMPTS = 2  # first try plus exactly one retry on NetworkError
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
REJECTED_STATUSES = frozenset({401, 403})


@dataclass(frozen=True, slots=True)
class KeyRange:
    """Timeline window that needs a key, as announced by a key-storage record."""
    start_ms: int
    end_ms: int
    feature_point: int
    ciphertext: bytes

    def to_request(self) -> dict:
        return {
            "start": self.start_ms,
            "end": self.end_ms,
            "featurePoint": self.feature_point,
            "aesCiphertext": base64.b64encode(self.ciphertext).decode("ascii"),
        }


@dataclass(frozen=True, slots=True)
class Keychain:
    """AES key material valid for [start_ms, end_ms) of the recording clock."""
    start_ms: int
    end_ms: int
    key: bytes
    iv: bytes

    def covers(self, timestamp_ms: int) -> bool:
        return self.start_ms <= timestamp_ms < self.end_ms


@dataclass(frozen=True, slots=True)
class DeviceInfo:
    serial: str
    version: int


def parse_keychain_response(body: dict) -> list[Keychain]:
    """Turn a service response into keychains.

    Raises:
        ApiKeyError: the service reported a non-zero result code.
        EmptyKeychainError: no entry carried usable key material.
    """
    result = body.get("result") if isinstance(body, dict) else None
    if not isinstance(result, dict):
        raise EmptyKeychainError("Keychain response has no result object")

    code = result.get("code", 0)
    if code != 0:
        raise ApiKeyError(f"Keychain request rejected (code {code}): {result.get('msg', '')}")

    keychains = []
    for entry in result.get("data") or []:
        try:
            key = base64.b64decode(entry["aesKey"], validate=True)
            iv = base64.b64decode(entry["aesIv"], validate=True)
            start, end = int(entry["start"]), int(entry["end"])
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            logger.warning("Skipping malformed keychain entry: %s", e)
            continue
        if len(key) != AES_KEY_SIZE or len(iv) != AES_IV_SIZE or end <= start:
            logger.warning(
                "Skipping unusable keychain [%d, %d): key=%d bytes iv=%d bytes",
                start, end, len(key), len(iv),
            )
            continue
        keychains.append(Keychain(start_ms=start, end_ms=end, key=key, iv=iv))

    if not keychains:
        raise EmptyKeychainError("Keychain service returned no usable keychain")
    return keychains


class KeychainClient:
    """Fetches keychains from the vendor service.

    Usage:
        client = KeychainClient(config.keychain)
        keychains = await client.fetch_keychains(device, ranges)
    """

    def __init__(self, config: KeychainConfig):
        if config.api_key is None or not config.api_key.get_secret_value():
            raise ApiKeyError("An API key is required to decrypt this log version")
        self._config = config
        self.attempts = 0

    def _build_request(self, device: DeviceInfo, ranges: list[KeyRange]) -> dict:
        return {
            "serial": device.serial,
            "version": device.version,
            "department": self._config.department,
            "ranges": [r.to_request() for r in ranges],
        }

    async def _post(self, payload: dict) -> dict:
        """One HTTP round trip. Maps transport failures onto the taxonomy."""
        headers = {
            "Api-Key": self._config.api_key.get_secret_value(),
            "User-Agent": "flightlog-decoder/0.1",
        }
        timeout = aiohttp.ClientTimeout(total=self._config.timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
                async with session.post(self._config.endpoint, json=payload) as resp:
                    if resp.status in REJECTED_STATUSES:
                        raise ApiKeyError(f"Keychain service rejected API key: HTTP {resp.status}")
                    if resp.status in RETRYABLE_STATUSES:
                        raise NetworkError(f"Keychain service unavailable: HTTP {resp.status}")
                    if resp.status != 200:
                        raise ApiKeyError(f"Keychain request rejected: HTTP {resp.status}")
                    return await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"Keychain service timed out after {self._config.timeout_s}s"
            ) from e
        except (aiohttp.ContentTypeError, ValueError) as e:
            raise EmptyKeychainError(f"Keychain response is not JSON: {e}") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Keychain service unreachable: {e}") from e

    async def fetch_keychains(self, device: DeviceInfo, ranges: list[KeyRange]) -> list[Keychain]:
        """Request keychains for the given timeline ranges.

        NetworkError is retried exactly once after the configured backoff.
        """
        payload = self._build_request(device, ranges)
        self.attempts = 0
        while True:
            self.attempts += 1
            try:
                body = await self._post(payload)
            except NetworkError as e:
                if self.attempts >= MAX_ATTEMPTS:
                    logger.error("Keychain fetch failed after %d attempts: %s", self.attempts, e)
                    raise
                logger.warning(
                    "Keychain fetch attempt %d failed (%s), retrying in %.1fs",
                    self.attempts, e, self._config.retry_backoff_s,
                )
                await asyncio.sleep(self._config.retry_backoff_s)
                continue
            keychains = parse_keychain_response(body)
            logger.info("Fetched %d keychains for %d ranges", len(keychains), len(ranges))
            return keychains


async def fetch_keychains(
    api_key: str,
    device_info: DeviceInfo,
    timeline_ranges: list[KeyRange],
    config: KeychainConfig | None = None,
) -> list[Keychain]:
    """Convenience wrapper: fetch keychains with an explicit API key."""
    config = (config or KeychainConfig()).model_copy(update={"api_key": SecretStr(api_key)})
    return await KeychainClient(config).fetch_keychains(device_info, timeline_ranges)
