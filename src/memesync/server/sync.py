"""Last-write-wins pull/push synchronization.

This module provides:
- Record models used to validate pushed records one at a time
- SyncEngine.pull: every record changed after a watermark
- SyncEngine.push: guarded upserts executed best-effort, one statement each

Conflict resolution uses timestamps only: an incoming asset, tag or setting
replaces the stored row when its updated_at is strictly newer. Asset-tag
links are append-only and inserted with insert-or-ignore semantics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from memesync.core.types import now_ms
from memesync.server.errors import QuotaExceededError
from memesync.server.models import Asset, AssetTag, Setting, Tag

if TYPE_CHECKING:
    from sqlalchemy.sql import Executable

    from memesync.server.database import Database
    from memesync.server.quota import QuotaEvaluator

logger = logging.getLogger(__name__)


# === Record models ===


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", from_attributes=True)


class AssetRecord(_Record):
    """An asset as exchanged with clients."""

    id: str = Field(min_length=1)
    content_hash: str
    file_name: str
    mime_type: str
    file_size: int = Field(default=0, ge=0)
    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)
    blob_key: str = Field(min_length=1)
    thumb_blob_key: str | None = None
    is_favorite: bool = False
    favorited_at: int | None = None
    use_count: int = Field(default=0, ge=0)
    last_used_at: int | None = None
    created_at: int
    updated_at: int
    deleted: bool = False
    deleted_at: int | None = None
    origin_device: str | None = None

    @model_validator(mode="after")
    def _check_timestamps(self) -> AssetRecord:
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        return self


class TagRecord(_Record):
    """A tag as exchanged with clients."""

    id: str = Field(min_length=1)
    name: str
    color: str | None = None
    use_count: int = Field(default=0, ge=0)
    created_at: int
    updated_at: int


class AssetTagRecord(_Record):
    """An asset-tag link as exchanged with clients."""

    asset_id: str = Field(min_length=1)
    tag_id: str = Field(min_length=1)
    created_at: int


class SettingRecord(_Record):
    """A synced setting as exchanged with clients."""

    key: str = Field(min_length=1)
    value: str
    updated_at: int


class SyncBatch(BaseModel):
    """Push request body.

    Records are kept loosely typed so each one can be validated on its own;
    a malformed record is skipped without failing the batch.
    """

    assets: list[dict[str, Any]] = Field(default_factory=list)
    tags: list[dict[str, Any]] = Field(default_factory=list)
    asset_tags: list[dict[str, Any]] = Field(default_factory=list)
    settings: list[dict[str, Any]] = Field(default_factory=list)


# === Results ===


@dataclass
class PullResult:
    """Records changed after a watermark, oldest change first."""

    assets: list[AssetRecord]
    tags: list[TagRecord]
    asset_tags: list[AssetTagRecord]
    settings: list[SettingRecord]
    server_timestamp: int

    @property
    def total_count(self) -> int:
        return len(self.assets) + len(self.tags) + len(self.asset_tags) + len(self.settings)


@dataclass
class PushResult:
    """Outcome of a push.

    Attributes:
        synced_count: Records accepted for an upsert attempt.
        skipped_count: Records rejected by validation.
        failed_count: Upsert statements that raised.
        server_timestamp: Server time after the push, usable as a pull watermark.
        errors: Messages of failed statements (logged, not returned to callers).
    """

    synced_count: int
    skipped_count: int
    failed_count: int
    server_timestamp: int
    errors: list[str] = field(default_factory=list)


@dataclass
class _ValidatedBatch:
    assets: list[AssetRecord] = field(default_factory=list)
    tags: list[TagRecord] = field(default_factory=list)
    asset_tags: list[AssetTagRecord] = field(default_factory=list)
    settings: list[SettingRecord] = field(default_factory=list)
    skipped: int = 0


def _validate_records(
    kind: str, raw_records: list[dict[str, Any]], model: type[_Record], batch: _ValidatedBatch
) -> list[Any]:
    records = []
    for raw in raw_records:
        try:
            records.append(model.model_validate(raw))
        except pydantic.ValidationError as e:
            batch.skipped += 1
            record_id = raw.get("id") or raw.get("key")
            logger.warning(
                "Skipping invalid %s record %s: %s",
                kind,
                record_id or "<unknown>",
                e.errors()[0]["msg"] if e.errors() else e,
            )
    return records


def validate_batch(batch: SyncBatch) -> _ValidatedBatch:
    """Validate every record of a push body individually."""
    validated = _ValidatedBatch()
    validated.assets = _validate_records("asset", batch.assets, AssetRecord, validated)
    validated.tags = _validate_records("tag", batch.tags, TagRecord, validated)
    validated.asset_tags = _validate_records(
        "asset_tag", batch.asset_tags, AssetTagRecord, validated
    )
    validated.settings = _validate_records("setting", batch.settings, SettingRecord, validated)
    return validated


# === Statement builders ===


def _guarded_upsert(
    model: Any,
    values: dict[str, Any],
    key: str,
    immutable: tuple[str, ...] = (),
) -> Executable:
    """Insert, or overwrite only when the incoming updated_at is newer."""
    stmt = sqlite_insert(model).values(**values)
    update_set = {
        column: stmt.excluded[column]
        for column in values
        if column != key and column not in immutable
    }
    return stmt.on_conflict_do_update(
        index_elements=[key],
        set_=update_set,
        where=model.__table__.c.updated_at < stmt.excluded.updated_at,
    )


def asset_upsert(record: AssetRecord, device_id: str | None) -> Executable:
    """Guarded upsert of an asset; origin_device is only written on insert."""
    values = record.model_dump()
    values["is_favorite"] = int(record.is_favorite)
    values["deleted"] = int(record.deleted)
    values["origin_device"] = record.origin_device or device_id
    return _guarded_upsert(Asset, values, "id", immutable=("origin_device",))


def tag_upsert(record: TagRecord) -> Executable:
    """Guarded upsert of a tag."""
    return _guarded_upsert(Tag, record.model_dump(), "id")


def setting_upsert(record: SettingRecord) -> Executable:
    """Guarded upsert of a setting."""
    return _guarded_upsert(Setting, record.model_dump(), "key")


def asset_tag_insert(record: AssetTagRecord) -> Executable:
    """Insert-or-ignore of an asset-tag link."""
    return (
        sqlite_insert(AssetTag)
        .values(**record.model_dump())
        .on_conflict_do_nothing(index_elements=["asset_id", "tag_id"])
    )


# === Engine ===


class SyncEngine:
    """Merge client replicas into the shared server state."""

    def __init__(self, db: Database, quota: QuotaEvaluator | None = None) -> None:
        """Initialize the engine.

        Args:
            db: Database instance.
            quota: Quota evaluator consulted before each push. None disables quotas.
        """
        self._db = db
        self._quota = quota

    def pull(self, since: int) -> PullResult:
        """Return every record changed strictly after since.

        Args:
            since: Watermark in milliseconds; 0 returns the full state.

        Returns:
            PullResult ordered ascending by change timestamp.
        """
        server_timestamp = now_ms()
        result = PullResult(
            assets=[AssetRecord.model_validate(a) for a in self._db.assets_changed_since(since)],
            tags=[TagRecord.model_validate(t) for t in self._db.tags_changed_since(since)],
            asset_tags=[
                AssetTagRecord.model_validate(link)
                for link in self._db.asset_tags_created_since(since)
            ],
            settings=[
                SettingRecord.model_validate(s) for s in self._db.settings_changed_since(since)
            ],
            server_timestamp=server_timestamp,
        )
        logger.debug("Pull since %d returned %d records", since, result.total_count)
        return result

    def _check_quota(self, assets: list[AssetRecord]) -> None:
        if self._quota is None:
            return
        decision = self._quota.check_push(assets)
        if not decision.allowed:
            logger.warning("Push rejected by quota: %s", decision.reason)
            raise QuotaExceededError(decision.reason or "Quota exceeded")

    def push(self, batch: SyncBatch, device_id: str | None = None) -> PushResult:
        """Merge a batch of client records into the server state.

        Invalid records are skipped individually. Quota is checked once
        before any write and rejects the whole push. Each upsert runs in its
        own transaction; a failing statement is logged and the rest still run.

        Args:
            batch: Push request body.
            device_id: Authenticated device, recorded as origin_device on new assets.

        Returns:
            PushResult with counts and a fresh server timestamp.

        Raises:
            QuotaExceededError: If the resulting usage would breach a ceiling.
        """
        validated = validate_batch(batch)
        self._check_quota(validated.assets)

        statements: list[Executable] = []
        statements.extend(asset_upsert(record, device_id) for record in validated.assets)
        statements.extend(tag_upsert(record) for record in validated.tags)
        statements.extend(asset_tag_insert(record) for record in validated.asset_tags)
        statements.extend(setting_upsert(record) for record in validated.settings)

        outcome = self._db.run_best_effort(statements)
        result = PushResult(
            synced_count=len(statements),
            skipped_count=validated.skipped,
            failed_count=outcome.failed,
            server_timestamp=now_ms(),
            errors=outcome.errors,
        )
        logger.info(
            "Push from %s: %d synced, %d skipped, %d failed",
            device_id or "unknown device",
            result.synced_count,
            result.skipped_count,
            result.failed_count,
        )
        return result
