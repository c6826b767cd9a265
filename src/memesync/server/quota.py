"""Quota and rate-limit evaluation.

This module provides:
- QuotaLimits: static ceilings configured at startup
- Pure evaluation functions over current usage
- RateCounter: optional hourly counter store for per-IP limits
- QuotaEvaluator: gathers usage from the database and applies the
  fail-open policy (an error while evaluating allows the operation)
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from throttled import RateLimiterType, Throttled, rate_limiter, store

from memesync.core.types import now_ms, start_of_utc_day

if TYPE_CHECKING:
    from memesync.server.database import Database
    from memesync.server.models import Asset, Share
    from memesync.server.sync import AssetRecord

logger = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024
HOUR_SECONDS = 3600


@dataclass(frozen=True)
class QuotaLimits:
    """Static ceilings shared by every device."""

    max_assets: int = 2000
    max_storage_bytes: int = GIB
    max_shares: int = 100
    max_shares_per_day: int = 10
    max_requests_per_ip_per_hour: int = 1000
    max_share_views_per_ip_per_hour: int = 100
    max_views_per_share: int = 10000
    max_downloads_per_share: int = 1000


@dataclass(frozen=True)
class Usage:
    """Current aggregate usage."""

    asset_count: int = 0
    storage_bytes: int = 0
    share_count: int = 0
    shares_today: int = 0


@dataclass(frozen=True)
class QuotaDecision:
    """Result of a quota check; reason is human-readable when not allowed."""

    allowed: bool
    reason: str | None = None


ALLOWED = QuotaDecision(allowed=True)


def format_bytes(size: int) -> str:
    """Format a byte count for humans (B, KB, MB, GB)."""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.2f} KB"
    if size < GIB:
        return f"{size / (1024 * 1024):.2f} MB"
    return f"{size / GIB:.2f} GB"


def evaluate_push(
    usage: Usage,
    limits: QuotaLimits,
    added_assets: int = 0,
    added_bytes: int = 0,
) -> QuotaDecision:
    """Check whether adding assets keeps usage within the ceilings.

    Args:
        usage: Current usage.
        limits: Configured ceilings.
        added_assets: Net change in non-deleted assets (negative when shrinking).
        added_bytes: Net change in bytes of non-deleted assets.

    Returns:
        QuotaDecision.
    """
    if added_assets > 0 and usage.asset_count + added_assets > limits.max_assets:
        return QuotaDecision(False, f"Asset limit reached ({limits.max_assets} assets)")
    if added_bytes > 0 and usage.storage_bytes + added_bytes > limits.max_storage_bytes:
        return QuotaDecision(
            False, f"Storage is full ({format_bytes(limits.max_storage_bytes)})"
        )
    return ALLOWED


def project_push(
    stored: Mapping[str, Asset], incoming: Iterable[AssetRecord]
) -> tuple[int, int]:
    """Net change in active asset count and bytes if a push is applied.

    Incoming records are replayed in order against the stored rows with the
    same strictly-newer rule the upserts use. A revived tombstone counts as
    one more asset, a new tombstone as one less, and a size change by its
    difference.

    Args:
        stored: Existing rows (tombstones included) for the incoming ids.
        incoming: Validated asset records in push order.

    Returns:
        Tuple of (asset delta, byte delta).
    """
    before = {
        asset_id: (row.updated_at, bool(row.deleted), row.file_size or 0)
        for asset_id, row in stored.items()
    }
    after = dict(before)
    for record in incoming:
        current = after.get(record.id)
        if current is None or current[0] < record.updated_at:
            after[record.id] = (record.updated_at, record.deleted, record.file_size)

    asset_delta = byte_delta = 0
    for asset_id, (_, deleted, size) in after.items():
        if not deleted:
            asset_delta += 1
            byte_delta += size
        previous = before.get(asset_id)
        if previous is not None and not previous[1]:
            asset_delta -= 1
            byte_delta -= previous[2]
    return asset_delta, byte_delta


def evaluate_share_creation(usage: Usage, limits: QuotaLimits) -> QuotaDecision:
    """Check the total and per-day share ceilings."""
    if usage.share_count >= limits.max_shares:
        return QuotaDecision(False, f"Share limit reached ({limits.max_shares} shares)")
    if usage.shares_today >= limits.max_shares_per_day:
        return QuotaDecision(
            False, f"Daily share limit reached ({limits.max_shares_per_day} per day)"
        )
    return ALLOWED


def percentage(used: int, limit: int) -> int:
    """Rounded percentage of limit used (0 when limit is 0)."""
    if limit <= 0:
        return 0
    return round(used / limit * 100)


class RateCounter(ABC):
    """Fixed hourly windows per key, used for per-IP rate limits."""

    @abstractmethod
    def hit(self, key: str, limit: int) -> bool:
        """Count one hit against the current window of key.

        Returns:
            True while the window stays within limit, False once it is exceeded.
        """


class ThrottledRateCounter(RateCounter):
    """Counter windows kept in a throttled-py store.

    MemoryStore suits a single server process; RedisStore shares the
    windows between processes. Expired windows are dropped by the store.
    """

    def __init__(
        self,
        counter_store: Any | None = None,
        period: timedelta = timedelta(seconds=HOUR_SECONDS),
    ) -> None:
        self._store = counter_store if counter_store is not None else store.MemoryStore()
        self._period = period
        self._lock = threading.Lock()
        self._throttles: dict[int, Throttled] = {}

    def _throttle(self, limit: int) -> Throttled:
        with self._lock:
            throttle = self._throttles.get(limit)
            if throttle is None:
                throttle = Throttled(
                    using=RateLimiterType.FIXED_WINDOW.value,
                    quota=rate_limiter.per_duration(self._period, limit=limit),
                    store=self._store,
                )
                self._throttles[limit] = throttle
            return throttle

    def hit(self, key: str, limit: int) -> bool:
        return not self._throttle(limit).limit(key, cost=1).limited


def create_rate_counter(backend: str | None, redis_url: str | None = None) -> RateCounter | None:
    """Build the configured counter store.

    Args:
        backend: "memory", "redis", or "off"/None to disable IP-level limiting.
        redis_url: Redis server URL, required by the "redis" backend.

    Raises:
        ValueError: If the backend is unknown or misconfigured.
    """
    if backend in (None, "", "off", "none"):
        return None
    if backend == "memory":
        return ThrottledRateCounter()
    if backend == "redis":
        if not redis_url:
            raise ValueError("Redis rate limiting requires MEMESYNC_REDIS_URL")
        return ThrottledRateCounter(store.RedisStore(server=redis_url))
    raise ValueError(f"Unknown rate limit backend: {backend}")


class QuotaEvaluator:
    """Evaluate quotas and rate limits against live usage.

    Every check is fail-open: if gathering usage raises, the error is
    logged and the operation is allowed.
    """

    def __init__(
        self,
        db: Database,
        limits: QuotaLimits,
        counter: RateCounter | None = None,
    ) -> None:
        """Initialize the evaluator.

        Args:
            db: Database instance.
            limits: Configured ceilings.
            counter: Optional counter store; None disables per-IP limits.
        """
        self._db = db
        self.limits = limits
        self.counter = counter

    def _fail_open(self, check: Callable[[], QuotaDecision], what: str) -> QuotaDecision:
        try:
            return check()
        except Exception:
            logger.exception("Quota evaluation failed (%s); allowing operation", what)
            return ALLOWED

    def usage(self) -> Usage:
        """Gather current usage from the database."""
        return Usage(
            asset_count=self._db.count_active_assets(),
            storage_bytes=self._db.active_storage_bytes(),
            share_count=self._db.count_shares(),
            shares_today=self._db.count_shares_created_since(start_of_utc_day(now_ms())),
        )

    def check_push(self, assets: Sequence[AssetRecord]) -> QuotaDecision:
        """Check asset and storage ceilings against the usage a push would leave."""
        if not assets:
            return ALLOWED

        def check() -> QuotaDecision:
            stored = self._db.get_assets(asset.id for asset in assets)
            added_assets, added_bytes = project_push(stored, assets)
            return evaluate_push(self.usage(), self.limits, added_assets, added_bytes)

        return self._fail_open(check, "push")

    def check_share_creation(self) -> QuotaDecision:
        """Check total and daily share ceilings before creating a share."""
        return self._fail_open(
            lambda: evaluate_share_creation(self.usage(), self.limits),
            "share creation",
        )

    def _check_window(self, key: str, limit: int, reason: str) -> QuotaDecision:
        if self.counter is None:
            return ALLOWED
        if limit <= 0 or not self.counter.hit(key, limit):
            return QuotaDecision(False, reason)
        return ALLOWED

    def check_request_rate(self, ip: str) -> QuotaDecision:
        """Count one request from ip against the hourly ceiling."""
        return self._fail_open(
            lambda: self._check_window(
                f"ip:{ip}",
                self.limits.max_requests_per_ip_per_hour,
                "Too many requests, please try again later",
            ),
            "request rate",
        )

    def check_share_view(self, share_id: str, ip: str) -> QuotaDecision:
        """Check the per-IP view rate and the per-share view ceiling."""

        def check() -> QuotaDecision:
            share = self._db.get_share(share_id)
            if share is not None and share.view_count >= self.limits.max_views_per_share:
                return QuotaDecision(False, "This share has reached its maximum number of views")
            return self._check_window(
                f"share-view:{ip}",
                self.limits.max_share_views_per_ip_per_hour,
                "Too many share views, please try again later",
            )

        return self._fail_open(check, "share view")

    def check_share_download(self, share: Share) -> QuotaDecision:
        """Check the global per-share download ceiling."""
        if share.download_count >= self.limits.max_downloads_per_share:
            return QuotaDecision(False, "This share has reached its maximum number of downloads")
        return ALLOWED

    def quota_info(self) -> dict[str, Any]:
        """Used / limit / percentage for assets, storage and shares."""
        usage = self.usage()
        return {
            "assets": {
                "used": usage.asset_count,
                "limit": self.limits.max_assets,
                "percentage": percentage(usage.asset_count, self.limits.max_assets),
            },
            "storage": {
                "used": usage.storage_bytes,
                "limit": self.limits.max_storage_bytes,
                "percentage": percentage(usage.storage_bytes, self.limits.max_storage_bytes),
            },
            "shares": {
                "used": usage.share_count,
                "limit": self.limits.max_shares,
                "percentage": percentage(usage.share_count, self.limits.max_shares),
            },
        }
