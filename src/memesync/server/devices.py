"""Device registration and the shared sync password.

Registration is gated by two server_config keys read on every call:
``require_sync_password`` and ``sync_password_hash``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from memesync.core.crypto import generate_device_id, hash_password, verify_password
from memesync.core.types import ConfigKey
from memesync.server.errors import AuthError, ConfigurationError, ValidationError

if TYPE_CHECKING:
    from memesync.server.database import Database
    from memesync.server.tokens import TokenService

logger = logging.getLogger(__name__)

DEFAULT_SERVER_NAME = "MemeSync"

# Inserted when missing; existing values are never overwritten
DEFAULT_SETTINGS = {
    "auto_play_gif": "true",
    "theme": "light",
    "grid_size": "medium",
}


@dataclass
class Registration:
    device_id: str
    token: str
    expires_at: int
    server_name: str
    require_sync_password: bool
    created: bool


class DeviceRegistry:
    """Register devices against the shared sync password."""

    def __init__(self, db: Database, tokens: TokenService) -> None:
        self._db = db
        self._tokens = tokens

    def server_name(self) -> str:
        return self._db.get_config(ConfigKey.SERVER_NAME.value) or DEFAULT_SERVER_NAME

    def sync_password_required(self) -> bool:
        value = self._db.get_config(ConfigKey.REQUIRE_SYNC_PASSWORD.value, "false") or "false"
        return value.strip().lower() == "true"

    def _check_sync_password(self, sync_password: str | None) -> None:
        if not self.sync_password_required():
            return
        stored_hash = self._db.get_config(ConfigKey.SYNC_PASSWORD_HASH.value)
        if not stored_hash:
            logger.error("Sync password is required but none is configured")
            raise ConfigurationError("Server sync password is not configured")
        if not sync_password:
            raise AuthError("Sync password required")
        if not verify_password(sync_password, stored_hash):
            logger.warning("Device registration rejected: wrong sync password")
            raise AuthError("Incorrect sync password")

    def register(
        self,
        device_name: str,
        device_type: str,
        platform: str,
        device_id: str | None = None,
        sync_password: str | None = None,
    ) -> Registration:
        """Register a new device, or refresh an existing one, and issue a token.

        Args:
            device_name: Display name.
            device_type: Kind of device (desktop, mobile, ...).
            platform: Operating system.
            device_id: Existing device ID; a new one is generated when absent.
            sync_password: Shared sync password, when the server requires one.

        Returns:
            Registration with the token and the server's public settings.

        Raises:
            ValidationError: If a required field is empty.
            ConfigurationError: If a sync password is required but none is set.
            AuthError: If the sync password is missing or wrong.
        """
        if not device_name or not device_type or not platform:
            raise ValidationError("device_name, device_type and platform are required")

        self._check_sync_password(sync_password)

        device, created = self._db.register_device(
            device_id or generate_device_id(),
            device_name,
            device_type,
            platform,
        )
        self._db.insert_default_settings(DEFAULT_SETTINGS)
        token, expires_at = self._tokens.issue(device.device_id)

        if created:
            logger.info("Registered device %s (%s, %s)", device.device_id, device_name, platform)
        else:
            logger.info("Device %s re-registered", device.device_id)

        return Registration(
            device_id=device.device_id,
            token=token,
            expires_at=expires_at,
            server_name=self.server_name(),
            require_sync_password=self.sync_password_required(),
            created=created,
        )


def set_sync_password(db: Database, password: str) -> None:
    """Require a sync password for registration and store its hash."""
    if not password:
        raise ValidationError("Sync password must not be empty")
    db.set_config(ConfigKey.SYNC_PASSWORD_HASH.value, hash_password(password))
    db.set_config(ConfigKey.REQUIRE_SYNC_PASSWORD.value, "true")
    logger.info("Sync password set; registration now requires it")


def clear_sync_password(db: Database) -> None:
    """Allow registration without a sync password."""
    db.set_config(ConfigKey.REQUIRE_SYNC_PASSWORD.value, "false")
    db.set_config(ConfigKey.SYNC_PASSWORD_HASH.value, "")
    logger.info("Sync password cleared")
