"""Runtime configuration for the flight-log decoder."""

from __future__ import annotations

from pydantic import BaseModel, SecretStr, model_validator

DEFAULT_KEYCHAIN_ENDPOINT = "https://dev.dji.com/openapi/v1/flight-records/keychains"


class KeychainConfig(BaseModel):
    """Keychain service access settings."""
    api_key: SecretStr | None = None
    endpoint: str = DEFAULT_KEYCHAIN_ENDPOINT
    timeout_s: float = 10.0       # per-request network timeout
    retry_backoff_s: float = 1.0  # wait before the single NetworkError retry
    department: int = 3           # vendor-assigned client category


class DecoderConfig(BaseModel):
    """Top-level configuration."""
    keychain: KeychainConfig = KeychainConfig()
    resync_window: int = 4096     # bytes scanned after a corrupt record
    issue_repeat_interval_ms: int = 10000  # min gap between repeats of one issue
    max_decrypt_failure_ratio: float = 0.5
    strict_decryption: bool = False  # raise when the ratio above is exceeded
    decode_timeout_s: float | None = None  # upper bound on the keychain exchange

    @model_validator(mode="after")
    def _network_timeout_below_decode_timeout(self) -> DecoderConfig:
        if self.decode_timeout_s is not None and self.keychain.timeout_s >= self.decode_timeout_s:
            raise ValueError(
                "keychain.timeout_s must be shorter than decode_timeout_s"
            )
        return self
