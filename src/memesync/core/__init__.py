"""Core module - Shared helpers for timestamps, hashing and identifiers."""

from memesync.core.crypto import (
    generate_device_id,
    generate_short_id,
    hash_password,
    verify_password,
)
from memesync.core.types import ConfigKey, file_extension, now_ms, start_of_utc_day

__all__ = [
    # Crypto
    "generate_device_id",
    "generate_short_id",
    "hash_password",
    "verify_password",
    # Types
    "ConfigKey",
    "file_extension",
    "now_ms",
    "start_of_utc_day",
]
