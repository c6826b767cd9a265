"""Link-based public sharing of assets.

This module provides:
- ShareManager.create: persist a share and publish copies of its blobs
- ShareManager.get: gated public view (expiry, download limit, password)
- ShareManager.import_share: claim the assets of a share, counting a download
- ShareManager.list_shares / delete

Blob copies and deletes are best-effort: a storage failure is logged and
never aborts the primary operation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from memesync.core.crypto import generate_short_id, hash_password, verify_password
from memesync.core.types import MS_PER_SECOND, file_extension, now_ms
from memesync.server.errors import (
    AuthError,
    ExpiredError,
    LimitReachedError,
    MemeSyncError,
    NotFoundError,
    QuotaExceededError,
    RateLimitError,
    ValidationError,
)
from memesync.server.models import Share

if TYPE_CHECKING:
    from collections.abc import Sequence

    from memesync.server.database import Database
    from memesync.server.models import Asset
    from memesync.server.quota import QuotaEvaluator
    from memesync.server.storage import ObjectStorage

logger = logging.getLogger(__name__)

SHARED_PREFIX = "shared"
THUMB_CONTENT_TYPE = "image/webp"


def share_prefix(share_id: str) -> str:
    """Object-store prefix holding the public copies of a share."""
    return f"{SHARED_PREFIX}/{share_id}/"


def public_blob_key(share_id: str, asset: Asset) -> str:
    """Public copy location of an asset's original file."""
    ext = file_extension(asset.blob_key) or file_extension(asset.file_name, "bin")
    return f"{share_prefix(share_id)}{asset.content_hash}.{ext}"


def public_thumb_key(share_id: str, asset: Asset) -> str:
    """Public copy location of an asset's thumbnail."""
    return f"{share_prefix(share_id)}{asset.content_hash}_thumb.webp"


def blob_url(base_url: str, key: str) -> str:
    """Public URL of an object served by the blob routes."""
    return f"{base_url.rstrip('/')}/blobs/{key}"


@dataclass
class CreatedShare:
    share_id: str
    share_url: str
    expires_at: int | None
    asset_count: int


@dataclass
class SharedAssetView:
    """Public descriptor of one asset in a share."""

    id: str
    file_name: str
    mime_type: str
    width: int
    height: int
    thumb_url: str
    download_url: str


@dataclass
class ShareView:
    """Share metadata plus its assets in display order."""

    share_id: str
    title: str | None
    description: str | None
    expires_at: int | None
    max_downloads: int | None
    view_count: int
    download_count: int
    created_at: int
    has_password: bool
    assets: list[SharedAssetView] = field(default_factory=list)


@dataclass
class ImportedAsset:
    id: str
    file_name: str
    mime_type: str
    download_url: str


@dataclass
class ImportedShare:
    share_id: str
    imported_count: int
    download_count: int
    assets: list[ImportedAsset] = field(default_factory=list)


@dataclass
class ShareSummary:
    """Share metadata as listed to authenticated devices."""

    share_id: str
    title: str | None
    description: str | None
    expires_at: int | None
    max_downloads: int | None
    view_count: int
    download_count: int
    created_at: int
    updated_at: int
    has_password: bool
    asset_count: int
    origin_device: str | None


class ShareManager:
    """Create, serve and remove public shares."""

    def __init__(
        self,
        db: Database,
        storage: ObjectStorage,
        quota: QuotaEvaluator | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            db: Database instance.
            storage: Object store holding asset blobs and public copies.
            quota: Quota evaluator; None disables share quotas and view rate limits.
        """
        self._db = db
        self._storage = storage
        self._quota = quota

    # === Creation ===

    def create(
        self,
        asset_ids: Sequence[str],
        base_url: str,
        title: str | None = None,
        description: str | None = None,
        expires_in: int | None = None,
        max_downloads: int | None = None,
        password: str | None = None,
        device_id: str | None = None,
    ) -> CreatedShare:
        """Create a share over existing, non-deleted assets.

        Args:
            asset_ids: Asset IDs in presentation order.
            base_url: Public base URL used to build the share URL.
            title: Optional title.
            description: Optional description.
            expires_in: Lifetime in seconds; None or 0 means the share never expires.
            max_downloads: Optional cap on imports.
            password: Optional password gating the share.
            device_id: Creating device, recorded as origin_device.

        Returns:
            CreatedShare with the public URL.

        Raises:
            ValidationError: If no asset ID refers to an existing asset.
            QuotaExceededError: If the share ceilings are reached.
        """
        if not asset_ids:
            raise ValidationError("asset_ids must not be empty")
        if max_downloads is not None and max_downloads < 1:
            raise ValidationError("max_downloads must be at least 1")

        if self._quota is not None:
            decision = self._quota.check_share_creation()
            if not decision.allowed:
                raise QuotaExceededError(decision.reason or "Share quota exceeded")

        assets = self._db.get_active_assets(asset_ids)
        included: list[tuple[str, int]] = []
        seen: set[str] = set()
        for position, asset_id in enumerate(asset_ids):
            if asset_id in seen:
                continue
            seen.add(asset_id)
            if asset_id not in assets:
                logger.warning("Asset %s not found or deleted, not shared", asset_id)
                continue
            included.append((asset_id, position))
        if not included:
            raise ValidationError("No valid assets to share")

        share_id = generate_short_id()
        timestamp = now_ms()
        share = Share(
            share_id=share_id,
            title=title,
            description=description,
            expires_at=timestamp + expires_in * MS_PER_SECOND if expires_in else None,
            max_downloads=max_downloads,
            password_hash=hash_password(password) if password else None,
            view_count=0,
            download_count=0,
            created_at=timestamp,
            updated_at=timestamp,
            origin_device=device_id,
        )
        share = self._db.create_share(share, included)

        for asset_id, _ in included:
            self._publish(share_id, assets[asset_id])

        logger.info("Created share %s with %d assets", share_id, len(included))
        return CreatedShare(
            share_id=share_id,
            share_url=f"{base_url.rstrip('/')}/s/{share_id}",
            expires_at=share.expires_at,
            asset_count=len(included),
        )

    def _copy(self, source_key: str, dest_key: str, content_type: str) -> None:
        try:
            if not self._storage.copy(source_key, dest_key, content_type):
                logger.warning("Blob %s missing, public copy %s not created", source_key, dest_key)
        except MemeSyncError as e:
            logger.error("Failed to copy %s to %s: %s", source_key, dest_key, e.message)

    def _publish(self, share_id: str, asset: Asset) -> None:
        """Copy an asset's blob (and thumbnail) into the share's public prefix."""
        self._copy(asset.blob_key, public_blob_key(share_id, asset), asset.mime_type)
        if asset.thumb_blob_key:
            self._copy(asset.thumb_blob_key, public_thumb_key(share_id, asset), THUMB_CONTENT_TYPE)

    # === Public access ===

    def _load_available(self, share_id: str) -> Share:
        share = self._db.get_share(share_id)
        if share is None:
            raise NotFoundError("Share not found")
        if share.expires_at is not None and share.expires_at < now_ms():
            raise ExpiredError("Share has expired")
        if share.max_downloads is not None and share.download_count >= share.max_downloads:
            raise LimitReachedError("Share has reached its download limit")
        if self._quota is not None:
            decision = self._quota.check_share_download(share)
            if not decision.allowed:
                raise LimitReachedError(decision.reason or "Share has reached its download limit")
        return share

    @staticmethod
    def _check_password(share: Share, password: str | None) -> None:
        if not share.password_hash:
            return
        if not password:
            raise AuthError("Password required")
        if not verify_password(password, share.password_hash):
            raise AuthError("Incorrect password")

    def _active_assets(self, share_id: str) -> list[Asset]:
        assets = [a for a in self._db.get_share_assets(share_id) if not a.deleted]
        if not assets:
            raise NotFoundError("Share has no assets")
        return assets

    def get(
        self,
        share_id: str,
        base_url: str,
        password: str | None = None,
        client_ip: str | None = None,
    ) -> ShareView:
        """Serve a share publicly, counting one view.

        Args:
            share_id: Public share ID.
            base_url: Public base URL used to build asset URLs.
            password: Password for gated shares.
            client_ip: Caller address used for the per-IP view limit.

        Returns:
            ShareView whose view_count includes this view.

        Raises:
            RateLimitError: Too many views from client_ip, or share view ceiling reached.
            NotFoundError: Unknown share, or no remaining assets.
            ExpiredError: The share is past expires_at.
            LimitReachedError: The download limit is reached.
            AuthError: Missing or wrong password.
        """
        if self._quota is not None:
            decision = self._quota.check_share_view(share_id, client_ip or "unknown")
            if not decision.allowed:
                raise RateLimitError(decision.reason or "Too many requests")

        share = self._load_available(share_id)
        self._check_password(share, password)
        assets = self._active_assets(share_id)

        self._db.increment_share_views(share_id)

        views = []
        for asset in assets:
            download_url = blob_url(base_url, public_blob_key(share_id, asset))
            thumb_url = (
                blob_url(base_url, public_thumb_key(share_id, asset))
                if asset.thumb_blob_key
                else download_url
            )
            views.append(
                SharedAssetView(
                    id=asset.id,
                    file_name=asset.file_name,
                    mime_type=asset.mime_type,
                    width=asset.width,
                    height=asset.height,
                    thumb_url=thumb_url,
                    download_url=download_url,
                )
            )
        return ShareView(
            share_id=share.share_id,
            title=share.title,
            description=share.description,
            expires_at=share.expires_at,
            max_downloads=share.max_downloads,
            view_count=share.view_count + 1,
            download_count=share.download_count,
            created_at=share.created_at,
            has_password=share.password_hash is not None,
            assets=views,
        )

    def import_share(
        self,
        share_id: str,
        base_url: str,
        password: str | None = None,
    ) -> ImportedShare:
        """Claim the assets of a share, counting one download.

        Raises:
            NotFoundError: Unknown share, or no remaining assets.
            ExpiredError: The share is past expires_at.
            LimitReachedError: The download limit is reached.
            AuthError: Missing or wrong password.
        """
        share = self._load_available(share_id)
        self._check_password(share, password)
        assets = self._active_assets(share_id)

        self._db.increment_share_downloads(share_id)
        logger.info("Share %s imported (%d assets)", share_id, len(assets))

        return ImportedShare(
            share_id=share_id,
            imported_count=len(assets),
            download_count=share.download_count + 1,
            assets=[
                ImportedAsset(
                    id=asset.id,
                    file_name=asset.file_name,
                    mime_type=asset.mime_type,
                    download_url=blob_url(base_url, public_blob_key(share_id, asset)),
                )
                for asset in assets
            ],
        )

    # === Management ===

    def list_shares(self) -> list[ShareSummary]:
        """Every share with its asset count, newest first."""
        return [
            ShareSummary(
                share_id=share.share_id,
                title=share.title,
                description=share.description,
                expires_at=share.expires_at,
                max_downloads=share.max_downloads,
                view_count=share.view_count,
                download_count=share.download_count,
                created_at=share.created_at,
                updated_at=share.updated_at,
                has_password=share.password_hash is not None,
                asset_count=asset_count,
                origin_device=share.origin_device,
            )
            for share, asset_count in self._db.list_shares()
        ]

    def delete(self, share_id: str) -> int:
        """Delete a share, its links and its public copies.

        Args:
            share_id: Share ID.

        Returns:
            Number of public objects removed.

        Raises:
            NotFoundError: If the share does not exist.
        """
        if not self._db.delete_share(share_id):
            raise NotFoundError("Share not found")

        removed = 0
        try:
            keys = [obj.key for obj in self._storage.list(share_prefix(share_id))]
        except MemeSyncError as e:
            logger.error("Failed to list public objects of share %s: %s", share_id, e.message)
            keys = []
        for key in keys:
            try:
                if self._storage.delete(key):
                    removed += 1
            except MemeSyncError as e:
                logger.error("Failed to delete %s: %s", key, e.message)

        logger.info("Deleted share %s (%d public objects removed)", share_id, removed)
        return removed
