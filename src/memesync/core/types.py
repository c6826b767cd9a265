"""Shared types and small helpers for memesync.

Timestamps exchanged with clients and stored in the database are integer
milliseconds since the Unix epoch.
"""

from __future__ import annotations

import time
from enum import Enum

MS_PER_SECOND = 1000
MS_PER_HOUR = 60 * 60 * MS_PER_SECOND
MS_PER_DAY = 24 * MS_PER_HOUR


def now_ms() -> int:
    """Return the current time in milliseconds since epoch."""
    return int(time.time() * MS_PER_SECOND)


def start_of_utc_day(timestamp_ms: int) -> int:
    """Return the first millisecond of the UTC calendar day containing timestamp_ms."""
    return timestamp_ms - (timestamp_ms % MS_PER_DAY)


def file_extension(file_name: str, default: str = "") -> str:
    """Get the extension of a file name, without the dot.

    Args:
        file_name: File name such as "cat.GIF".
        default: Value returned when the name has no extension.

    Returns:
        Lower-cased extension, or default.
    """
    parts = file_name.rsplit("/", 1)[-1].rsplit(".", 1)
    if len(parts) == 2 and parts[1]:
        return parts[1].lower()
    return default


class ConfigKey(str, Enum):
    """Well-known keys of the server_config table."""

    SERVER_NAME = "server_name"
    REQUIRE_SYNC_PASSWORD = "require_sync_password"
    SYNC_PASSWORD_HASH = "sync_password_hash"
