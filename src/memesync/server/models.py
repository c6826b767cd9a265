"""SQLAlchemy models for MemeSync server.

This module defines the database schema using SQLAlchemy ORM.
All timestamps are integer milliseconds since epoch, as exchanged with clients.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from memesync.core.types import now_ms


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class Device(Base):
    """Represents a registered client device."""

    __tablename__ = "devices"

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    device_name: Mapped[str] = mapped_column(String(255), nullable=False)
    device_type: Mapped[str] = mapped_column(String(50), nullable=False)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, nullable=False)
    last_seen_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, nullable=False)


class Asset(Base):
    """Represents an image asset shared by every device."""

    __tablename__ = "assets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    content_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    width: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    height: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    blob_key: Mapped[str] = mapped_column(Text, nullable=False)
    thumb_blob_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_favorite: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    favorited_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    use_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deleted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deleted_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    origin_device: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Indexes
    __table_args__ = (
        Index("idx_assets_updated", "updated_at"),
        Index("idx_assets_deleted", "deleted"),
    )


class Tag(Base):
    """Represents a tag in the shared tag namespace."""

    __tablename__ = "tags"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    color: Mapped[str | None] = mapped_column(String(32), nullable=True)
    use_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("idx_tags_updated", "updated_at"),)


class AssetTag(Base):
    """Append-only association between an asset and a tag."""

    __tablename__ = "asset_tags"

    asset_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tag_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("idx_asset_tags_created", "created_at"),)


class Setting(Base):
    """A synced client setting (opaque string value)."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Share(Base):
    """A public, read-only view over a subset of assets."""

    __tablename__ = "shares"

    share_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    max_downloads: Mapped[int | None] = mapped_column(Integer, nullable=True)
    password_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    download_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, nullable=False)
    origin_device: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (Index("idx_shares_created", "created_at"),)


class ShareAsset(Base):
    """An asset included in a share, with its presentation order."""

    __tablename__ = "share_assets"

    share_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("shares.share_id", ondelete="CASCADE"),
        primary_key=True,
    )
    asset_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ServerConfig(Base):
    """Dynamic server configuration, read fresh on every request."""

    __tablename__ = "server_config"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
