"""Server database using SQLAlchemy with SQLite.

This module provides:
- Device registration records
- Dynamic server configuration (server_config table)
- Change-tracked reads for sync pull
- Best-effort execution of prepared statements for sync push
- Share records and their counters
- Aggregates for quota accounting
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, delete, event, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from memesync.core.types import ConfigKey, now_ms
from memesync.server.models import (
    Asset,
    AssetTag,
    Base,
    Device,
    ServerConfig,
    Setting,
    Share,
    ShareAsset,
    Tag,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.sql import Executable

logger = logging.getLogger(__name__)

DEFAULT_SERVER_CONFIG: dict[str, tuple[str, str]] = {
    ConfigKey.SERVER_NAME.value: ("MemeSync", "Display name returned to devices"),
    ConfigKey.REQUIRE_SYNC_PASSWORD.value: ("false", "Require a sync password to register"),
    ConfigKey.SYNC_PASSWORD_HASH.value: ("", "Argon2 hash of the shared sync password"),
}


@dataclass
class BatchResult:
    """Outcome of a best-effort statement batch.

    Attributes:
        succeeded: Number of statements that executed without error.
        failed: Number of statements that raised.
        errors: Error messages, in statement order.
    """

    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class Database:
    """SQLAlchemy database for server state.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # check_same_thread=False: route handlers run in a thread pool
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )

        # Foreign keys are a per-connection pragma in SQLite
        @event.listens_for(self._engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")

        # Create tables if they don't exist
        Base.metadata.create_all(self._engine)
        self._seed_server_config()

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)

    # === Statement execution ===

    def execute(self, statement: Executable) -> None:
        """Execute a single statement in its own transaction.

        Raises:
            SQLAlchemyError: If the statement fails.
        """
        with self._engine.begin() as conn:
            conn.execute(statement)

    def run_best_effort(self, statements: Sequence[Executable]) -> BatchResult:
        """Execute statements one by one, each in its own transaction.

        A failing statement is logged and counted; the remaining statements
        still run. Nothing is rolled back across statements.

        Args:
            statements: Prepared statements to execute in order.

        Returns:
            BatchResult with success/failure counts.
        """
        result = BatchResult()
        total = len(statements)
        for index, statement in enumerate(statements, start=1):
            try:
                self.execute(statement)
                result.succeeded += 1
            except SQLAlchemyError as e:
                result.failed += 1
                result.errors.append(str(e))
                logger.error("Statement %d/%d failed: %s", index, total, e)
        if result.failed:
            logger.warning(
                "Batch finished with failures: %d succeeded, %d failed",
                result.succeeded,
                result.failed,
            )
        return result

    # === Server config operations ===

    def _seed_server_config(self) -> None:
        """Insert default config rows that don't exist yet."""
        timestamp = now_ms()
        rows = [
            {"key": key, "value": value, "description": description, "updated_at": timestamp}
            for key, (value, description) in DEFAULT_SERVER_CONFIG.items()
        ]
        stmt = sqlite_insert(ServerConfig).values(rows).on_conflict_do_nothing(
            index_elements=["key"]
        )
        self.execute(stmt)

    def get_config(self, key: str, default: str | None = None) -> str | None:
        """Get a config value.

        Args:
            key: Config key.
            default: Value returned when the key is absent.

        Returns:
            Stored value or default.
        """
        with self._session() as session:
            row = session.get(ServerConfig, key)
            if row is None:
                return default
            return row.value

    def set_config(self, key: str, value: str, description: str | None = None) -> None:
        """Create or update a config value.

        Args:
            key: Config key.
            value: New value.
            description: Optional human-readable description.
        """
        values: dict[str, Any] = {"key": key, "value": value, "updated_at": now_ms()}
        update_set: dict[str, Any] = {"value": value, "updated_at": values["updated_at"]}
        if description is not None:
            values["description"] = description
            update_set["description"] = description
        stmt = sqlite_insert(ServerConfig).values(**values).on_conflict_do_update(
            index_elements=["key"], set_=update_set
        )
        self.execute(stmt)

    def list_config(self) -> list[ServerConfig]:
        """List all config rows ordered by key."""
        with self._session() as session:
            rows = list(session.execute(select(ServerConfig).order_by(ServerConfig.key)).scalars())
            for row in rows:
                session.expunge(row)
            return rows

    # === Device operations ===

    def get_device(self, device_id: str) -> Device | None:
        """Get a device by ID.

        Args:
            device_id: Device ID.

        Returns:
            Device if found, None otherwise.
        """
        with self._session() as session:
            device = session.get(Device, device_id)
            if device:
                session.expunge(device)
            return device

    def register_device(
        self,
        device_id: str,
        device_name: str,
        device_type: str,
        platform: str,
    ) -> tuple[Device, bool]:
        """Create a device, or refresh an existing one.

        Existing devices get their name, type, platform and last_seen_at updated.

        Args:
            device_id: Device ID.
            device_name: Display name.
            device_type: Kind of device (desktop, mobile, ...).
            platform: Operating system.

        Returns:
            Tuple of (Device, created) where created is True for a new device.
        """
        timestamp = now_ms()
        with self._session() as session:
            device = session.get(Device, device_id)
            created = device is None
            if device is None:
                device = Device(
                    device_id=device_id,
                    device_name=device_name,
                    device_type=device_type,
                    platform=platform,
                    created_at=timestamp,
                    last_seen_at=timestamp,
                )
                session.add(device)
            else:
                device.device_name = device_name
                device.device_type = device_type
                device.platform = platform
                device.last_seen_at = timestamp
            session.commit()
            session.refresh(device)
            session.expunge(device)
            return device, created

    def list_devices(self) -> list[Device]:
        """List all registered devices, most recently seen first."""
        with self._session() as session:
            stmt = select(Device).order_by(Device.last_seen_at.desc())
            devices = list(session.execute(stmt).scalars().all())
            for device in devices:
                session.expunge(device)
            return devices

    # === Settings operations ===

    def insert_default_settings(self, defaults: dict[str, str]) -> None:
        """Insert settings that don't exist yet; existing values are untouched."""
        if not defaults:
            return
        timestamp = now_ms()
        rows = [{"key": k, "value": v, "updated_at": timestamp} for k, v in defaults.items()]
        stmt = sqlite_insert(Setting).values(rows).on_conflict_do_nothing(index_elements=["key"])
        self.execute(stmt)

    # === Change-tracked reads (sync pull) ===

    def _changed_since(
        self, model: Any, column: Any, since: int, tiebreak: Iterable[Any]
    ) -> list[Any]:
        with self._session() as session:
            stmt = select(model).where(column > since).order_by(column.asc(), *tiebreak)
            rows = list(session.execute(stmt).scalars().all())
            for row in rows:
                session.expunge(row)
            return rows

    def assets_changed_since(self, since: int) -> list[Asset]:
        """Assets with updated_at > since, oldest change first."""
        return self._changed_since(Asset, Asset.updated_at, since, [Asset.id])

    def tags_changed_since(self, since: int) -> list[Tag]:
        """Tags with updated_at > since, oldest change first."""
        return self._changed_since(Tag, Tag.updated_at, since, [Tag.id])

    def asset_tags_created_since(self, since: int) -> list[AssetTag]:
        """Asset-tag links with created_at > since, oldest first."""
        return self._changed_since(
            AssetTag, AssetTag.created_at, since, [AssetTag.asset_id, AssetTag.tag_id]
        )

    def settings_changed_since(self, since: int) -> list[Setting]:
        """Settings with updated_at > since, oldest change first."""
        return self._changed_since(Setting, Setting.updated_at, since, [Setting.key])

    # === Asset operations ===

    def get_assets(self, asset_ids: Iterable[str]) -> dict[str, Asset]:
        """Get assets by ID, including tombstoned ones.

        Args:
            asset_ids: Asset IDs to look up.

        Returns:
            Mapping of asset ID to Asset for the IDs that have a row.
        """
        ids = list(set(asset_ids))
        if not ids:
            return {}
        with self._session() as session:
            stmt = select(Asset).where(Asset.id.in_(ids))
            assets = list(session.execute(stmt).scalars().all())
            for asset in assets:
                session.expunge(asset)
            return {asset.id: asset for asset in assets}

    def get_active_assets(self, asset_ids: Iterable[str]) -> dict[str, Asset]:
        """Get non-deleted assets by ID.

        Args:
            asset_ids: Asset IDs to look up.

        Returns:
            Mapping of asset ID to Asset for the IDs that exist and are not deleted.
        """
        ids = list(set(asset_ids))
        if not ids:
            return {}
        with self._session() as session:
            stmt = select(Asset).where(Asset.id.in_(ids), Asset.deleted == 0)
            assets = list(session.execute(stmt).scalars().all())
            for asset in assets:
                session.expunge(asset)
            return {asset.id: asset for asset in assets}

    def get_asset(self, asset_id: str) -> Asset | None:
        """Get an asset by ID, including tombstoned ones."""
        with self._session() as session:
            asset = session.get(Asset, asset_id)
            if asset:
                session.expunge(asset)
            return asset

    def list_assets(self) -> list[Asset]:
        """List every asset row (including tombstones), newest first."""
        with self._session() as session:
            stmt = select(Asset).order_by(Asset.created_at.desc())
            assets = list(session.execute(stmt).scalars().all())
            for asset in assets:
                session.expunge(asset)
            return assets

    def active_blob_references(self) -> list[tuple[str, str, str | None]]:
        """Return (asset_id, blob_key, thumb_blob_key) for every non-deleted asset."""
        with self._session() as session:
            stmt = (
                select(Asset.id, Asset.blob_key, Asset.thumb_blob_key)
                .where(Asset.deleted == 0)
                .order_by(Asset.created_at.desc())
            )
            return [(row.id, row.blob_key, row.thumb_blob_key) for row in session.execute(stmt)]

    # === Statistics operations ===

    def count_active_assets(self) -> int:
        """Number of non-deleted assets."""
        with self._session() as session:
            stmt = select(func.count(Asset.id)).where(Asset.deleted == 0)
            return session.execute(stmt).scalar() or 0

    def active_storage_bytes(self) -> int:
        """Sum of file_size over non-deleted assets."""
        with self._session() as session:
            stmt = select(func.coalesce(func.sum(Asset.file_size), 0)).where(Asset.deleted == 0)
            return session.execute(stmt).scalar() or 0

    def count_shares(self) -> int:
        """Number of shares."""
        with self._session() as session:
            return session.execute(select(func.count(Share.share_id))).scalar() or 0

    def count_shares_created_since(self, since: int) -> int:
        """Number of shares with created_at >= since."""
        with self._session() as session:
            stmt = select(func.count(Share.share_id)).where(Share.created_at >= since)
            return session.execute(stmt).scalar() or 0

    # === Share operations ===

    def create_share(self, share: Share, asset_ids: Sequence[tuple[str, int]]) -> Share:
        """Persist a share and its asset links.

        An existing share with the same ID is replaced.

        Args:
            share: Share to insert (share_id must be set).
            asset_ids: (asset_id, display_order) pairs.

        Returns:
            The persisted Share, detached from its session.
        """
        with self._session() as session:
            session.execute(delete(ShareAsset).where(ShareAsset.share_id == share.share_id))
            share = session.merge(share)
            session.flush()
            for asset_id, display_order in asset_ids:
                session.add(
                    ShareAsset(
                        share_id=share.share_id,
                        asset_id=asset_id,
                        display_order=display_order,
                    )
                )
            session.commit()
            session.refresh(share)
            session.expunge(share)
            return share

    def get_share(self, share_id: str) -> Share | None:
        """Get a share by ID."""
        with self._session() as session:
            share = session.get(Share, share_id)
            if share:
                session.expunge(share)
            return share

    def get_share_assets(self, share_id: str) -> list[Asset]:
        """Assets of a share in display order."""
        with self._session() as session:
            stmt = (
                select(Asset)
                .join(ShareAsset, ShareAsset.asset_id == Asset.id)
                .where(ShareAsset.share_id == share_id)
                .order_by(ShareAsset.display_order)
            )
            assets = list(session.execute(stmt).scalars().all())
            for asset in assets:
                session.expunge(asset)
            return assets

    def increment_share_views(self, share_id: str) -> None:
        """Add one to view_count using a store-side expression."""
        self.execute(
            update(Share)
            .where(Share.share_id == share_id)
            .values(view_count=Share.view_count + 1)
        )

    def increment_share_downloads(self, share_id: str) -> None:
        """Add one to download_count using a store-side expression."""
        self.execute(
            update(Share)
            .where(Share.share_id == share_id)
            .values(download_count=Share.download_count + 1)
        )

    def list_shares(self) -> list[tuple[Share, int]]:
        """List shares with their asset counts, newest first."""
        with self._session() as session:
            stmt = (
                select(Share, func.count(ShareAsset.asset_id).label("asset_count"))
                .outerjoin(ShareAsset, ShareAsset.share_id == Share.share_id)
                .group_by(Share.share_id)
                .order_by(Share.created_at.desc())
            )
            rows = session.execute(stmt).all()
            result: list[tuple[Share, int]] = []
            for share, asset_count in rows:
                session.expunge(share)
                result.append((share, asset_count))
            return result

    def list_share_ids(self) -> set[str]:
        """IDs of all existing shares."""
        with self._session() as session:
            return set(session.execute(select(Share.share_id)).scalars().all())

    def delete_share(self, share_id: str) -> bool:
        """Delete a share and its asset links.

        Args:
            share_id: Share ID.

        Returns:
            True if the share was deleted, False if not found.
        """
        with self._session() as session:
            share = session.get(Share, share_id)
            if not share:
                return False
            session.execute(delete(ShareAsset).where(ShareAsset.share_id == share_id))
            session.delete(share)
            session.commit()
            return True
