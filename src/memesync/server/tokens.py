"""Signed, expiring device tokens.

Tokens are HS256 JWTs carrying the device ID and an expiry claim. They are
stateless: verification needs only the shared secret, so several server
instances can verify each other's tokens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt

from memesync.core.types import MS_PER_SECOND
from memesync.server.errors import AuthError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL = timedelta(days=30)


@dataclass(frozen=True)
class DeviceIdentity:
    """Identity decoded from a verified token.

    Attributes:
        device_id: ID of the device the token was issued to.
        expires_at: Expiry in milliseconds since epoch.
    """

    device_id: str
    expires_at: int


class TokenService:
    """Issue and verify device tokens."""

    def __init__(self, secret: str, ttl: timedelta = DEFAULT_TOKEN_TTL) -> None:
        """Initialize the token service.

        Args:
            secret: HMAC secret shared by every server instance.
            ttl: Lifetime of issued tokens.
        """
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self._ttl = ttl

    def issue(self, device_id: str) -> tuple[str, int]:
        """Issue a token for a device.

        Args:
            device_id: Device the token is bound to.

        Returns:
            Tuple of (token, expires_at in milliseconds).
        """
        now = datetime.now(UTC)
        expires = now + self._ttl
        payload = {"device_id": device_id, "iat": now, "exp": expires}
        token = jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        return token, int(expires.timestamp() * MS_PER_SECOND)

    def verify(self, token: str) -> DeviceIdentity:
        """Verify a token and decode its identity.

        Args:
            token: Raw bearer token.

        Returns:
            DeviceIdentity of the token holder.

        Raises:
            AuthError: If the token is malformed, tampered with or expired.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthError("Token has expired") from e
        except jwt.InvalidTokenError as e:
            logger.debug("Token verification failed: %s", e)
            raise AuthError("Invalid token") from e

        device_id = payload.get("device_id")
        if not isinstance(device_id, str) or not device_id:
            raise AuthError("Invalid token")
        return DeviceIdentity(device_id=device_id, expires_at=int(payload["exp"]) * MS_PER_SECOND)
