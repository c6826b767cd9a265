"""Static server settings read from environment variables.

Dynamic settings (server name, sync password) live in the server_config
table instead and are read fresh on every request.
"""

from __future__ import annotations

import logging
import os
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from memesync.server.quota import QuotaLimits

logger = logging.getLogger(__name__)

ENV_PREFIX = "MEMESYNC_"

# Environment variable suffix -> QuotaLimits field
_LIMIT_VARS = {
    "MAX_ASSETS": "max_assets",
    "MAX_STORAGE_BYTES": "max_storage_bytes",
    "MAX_SHARES": "max_shares",
    "MAX_SHARES_PER_DAY": "max_shares_per_day",
    "MAX_REQUESTS_PER_IP_PER_HOUR": "max_requests_per_ip_per_hour",
    "MAX_SHARE_VIEWS_PER_IP_PER_HOUR": "max_share_views_per_ip_per_hour",
    "MAX_VIEWS_PER_SHARE": "max_views_per_share",
    "MAX_DOWNLOADS_PER_SHARE": "max_downloads_per_share",
}


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from e


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def build_storage_config(env: Mapping[str, str]) -> dict[str, str | None]:
    """Build storage configuration from environment variables."""
    # S3 storage if bucket is configured
    s3_bucket = env.get("MEMESYNC_S3_BUCKET")
    if s3_bucket:
        return {
            "type": "s3",
            "bucket": s3_bucket,
            "endpoint_url": env.get("MEMESYNC_S3_ENDPOINT"),
            "access_key": env.get("MEMESYNC_S3_ACCESS_KEY"),
            "secret_key": env.get("MEMESYNC_S3_SECRET_KEY"),
            "region": env.get("MEMESYNC_S3_REGION", "auto"),
        }

    # Local storage (default)
    return {
        "type": "local",
        "local_path": env.get("MEMESYNC_STORAGE_PATH", "storage"),
    }


def build_quota_limits(env: Mapping[str, str]) -> QuotaLimits:
    """Build quota ceilings, overriding defaults from MEMESYNC_MAX_* variables."""
    defaults = QuotaLimits()
    overrides = {
        attr: _get_int(env, name, getattr(defaults, attr)) for name, attr in _LIMIT_VARS.items()
    }
    return QuotaLimits(**overrides)


@dataclass
class ServerSettings:
    """Static settings fixed at startup.

    Attributes:
        db_path: SQLite database file.
        log_path: Log file.
        jwt_secret: HMAC secret for device tokens.
        token_ttl_days: Lifetime of device tokens.
        public_url: Base URL used in share links; None uses the request's base URL.
        rate_limit: Rate counter backend ("memory", "redis" or "off").
        redis_url: Redis server for the "redis" rate counter backend.
        audit_enabled: Run the consistency scans daily.
        audit_hour: Hour (0-23, server local time) of the daily scans.
        limits: Quota ceilings.
        storage: Object storage configuration for create_storage().
    """

    db_path: Path = Path("memesync.db")
    log_path: Path = Path("memesync-server.log")
    jwt_secret: str = field(default_factory=lambda: secrets.token_urlsafe(32))
    token_ttl_days: int = 30
    public_url: str | None = None
    rate_limit: str = "off"
    redis_url: str | None = None
    audit_enabled: bool = False
    audit_hour: int = 4
    limits: QuotaLimits = field(default_factory=QuotaLimits)
    storage: dict[str, str | None] = field(
        default_factory=lambda: {"type": "local", "local_path": "storage"}
    )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ServerSettings:
        """Read settings from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ).

        Raises:
            ValueError: If a numeric variable is not an integer or out of range.
        """
        env = os.environ if environ is None else environ

        jwt_secret = env.get("MEMESYNC_JWT_SECRET")
        if not jwt_secret:
            logger.warning(
                "MEMESYNC_JWT_SECRET is not set; using a random secret, "
                "tokens will not survive a restart"
            )
            jwt_secret = secrets.token_urlsafe(32)

        audit_hour = _get_int(env, "AUDIT_HOUR", 4)
        if not 0 <= audit_hour <= 23:
            raise ValueError(f"MEMESYNC_AUDIT_HOUR must be between 0 and 23, got {audit_hour}")

        public_url = env.get("MEMESYNC_PUBLIC_URL") or None
        return cls(
            db_path=Path(env.get("MEMESYNC_DB_PATH", "memesync.db")),
            log_path=Path(env.get("MEMESYNC_LOG_PATH", "memesync-server.log")),
            jwt_secret=jwt_secret,
            token_ttl_days=_get_int(env, "TOKEN_TTL_DAYS", 30),
            public_url=public_url.rstrip("/") if public_url else None,
            rate_limit=env.get("MEMESYNC_RATE_LIMIT", "off").strip().lower(),
            redis_url=env.get("MEMESYNC_REDIS_URL") or None,
            audit_enabled=_get_bool(env, "AUDIT_ENABLED", False),
            audit_hour=audit_hour,
            limits=build_quota_limits(env),
            storage=build_storage_config(env),
        )
