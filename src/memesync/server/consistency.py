"""On-demand reconciliation checks between the database and the object store.

The two stores have no cross-store transaction, so drift is expected:
- Orphan scan: objects that no live asset references
- Missing-blob scan: live assets whose blob is absent from the store

Both checks are read-only; they report discrepancies and never repair them.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from memesync.server.errors import MemeSyncError
from memesync.server.shares import SHARED_PREFIX
from memesync.server.sync import AssetRecord

if TYPE_CHECKING:
    from memesync.server.database import Database
    from memesync.server.storage import ObjectStorage

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


@dataclass
class OrphanObject:
    key: str
    size: int


@dataclass
class OrphanSummary:
    total_objects: int
    total_referenced_keys: int
    orphan_count: int
    orphan_size_bytes: int


@dataclass
class OrphanReport:
    summary: OrphanSummary
    orphans: list[OrphanObject] = field(default_factory=list)


@dataclass
class MissingBlob:
    asset_id: str
    blob_key: str


@dataclass
class MissingSummary:
    total_assets: int
    total_keys: int
    missing_count: int


@dataclass
class MissingReport:
    summary: MissingSummary
    missing: list[MissingBlob] = field(default_factory=list)


@dataclass
class CloudAssetSummary:
    total: int
    deleted: int
    with_blob: int


@dataclass
class CloudAssetReport:
    summary: CloudAssetSummary
    assets: list[AssetRecord] = field(default_factory=list)


def _live_share_key(key: str, share_ids: set[str]) -> bool:
    """True if key is a public copy belonging to a share that still exists."""
    parts = key.split("/", 2)
    return len(parts) == 3 and parts[0] == SHARED_PREFIX and parts[1] in share_ids


class ConsistencyAuditor:
    """Compare object-store contents with asset rows."""

    def __init__(
        self,
        db: Database,
        storage: ObjectStorage,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        """Initialize the auditor.

        Args:
            db: Database instance.
            storage: Object store to audit.
            batch_size: Existence probes run concurrently per batch.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._db = db
        self._storage = storage
        self._batch_size = batch_size

    def find_orphans(self) -> OrphanReport:
        """Report objects referenced by no live asset.

        Public share copies are referenced by their share rather than by an
        asset, so objects under the prefix of an existing share are not
        orphans. Copies left behind by a deleted share are.
        """
        referenced: set[str] = set()
        for _, blob_key, thumb_blob_key in self._db.active_blob_references():
            referenced.add(blob_key)
            if thumb_blob_key:
                referenced.add(thumb_blob_key)
        share_ids = self._db.list_share_ids()

        total_objects = 0
        orphans: list[OrphanObject] = []
        for obj in self._storage.list():
            total_objects += 1
            if obj.key in referenced or _live_share_key(obj.key, share_ids):
                continue
            orphans.append(OrphanObject(key=obj.key, size=obj.size))

        summary = OrphanSummary(
            total_objects=total_objects,
            total_referenced_keys=len(referenced),
            orphan_count=len(orphans),
            orphan_size_bytes=sum(o.size for o in orphans),
        )
        logger.info(
            "Orphan scan: %d objects, %d referenced keys, %d orphans (%d bytes)",
            summary.total_objects,
            summary.total_referenced_keys,
            summary.orphan_count,
            summary.orphan_size_bytes,
        )
        return OrphanReport(summary=summary, orphans=orphans)

    def _probe(self, key: str) -> bool:
        """Check one key; a failing probe counts as missing."""
        try:
            return self._storage.head(key) is not None
        except MemeSyncError as e:
            logger.warning("Existence probe failed for %s: %s", key, e.message)
            return False

    def find_missing_blobs(self) -> MissingReport:
        """Report live assets whose blob is absent from the object store.

        Probes run concurrently within a batch and batches run one after another.
        """
        references = [
            (asset_id, blob_key) for asset_id, blob_key, _ in self._db.active_blob_references()
        ]
        missing: list[MissingBlob] = []

        with ThreadPoolExecutor(max_workers=self._batch_size) as executor:
            for start in range(0, len(references), self._batch_size):
                batch = references[start : start + self._batch_size]
                found = executor.map(self._probe, [blob_key for _, blob_key in batch])
                for (asset_id, blob_key), exists in zip(batch, found, strict=True):
                    if not exists:
                        missing.append(MissingBlob(asset_id=asset_id, blob_key=blob_key))
                logger.debug("Probed %d/%d blobs", start + len(batch), len(references))

        summary = MissingSummary(
            total_assets=len(references),
            total_keys=len({blob_key for _, blob_key in references}),
            missing_count=len(missing),
        )
        logger.info(
            "Missing-blob scan: %d assets checked, %d missing",
            summary.total_assets,
            summary.missing_count,
        )
        return MissingReport(summary=summary, missing=missing)

    def cloud_assets(self) -> CloudAssetReport:
        """Every asset row, tombstones included, with a summary."""
        assets = [AssetRecord.model_validate(asset) for asset in self._db.list_assets()]
        summary = CloudAssetSummary(
            total=len(assets),
            deleted=sum(1 for a in assets if a.deleted),
            with_blob=sum(1 for a in assets if a.blob_key),
        )
        return CloudAssetReport(summary=summary, assets=assets)
