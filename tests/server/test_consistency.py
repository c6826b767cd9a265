"""Tests for the consistency auditor."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import patch

import pytest

from memesync.server.consistency import ConsistencyAuditor
from memesync.server.database import Database
from memesync.server.errors import StorageIOError
from memesync.server.shares import ShareManager
from memesync.server.storage import LocalFSStorage
from memesync.server.sync import SyncBatch, SyncEngine

MakeAsset = Callable[..., dict[str, Any]]


@pytest.fixture
def auditor(db: Database, storage: LocalFSStorage) -> ConsistencyAuditor:
    """Auditor over the test database and store."""
    return ConsistencyAuditor(db, storage)


class TestFindOrphans:
    """Tests for the orphan scan."""

    def test_unreferenced_object_is_orphan(
        self,
        auditor: ConsistencyAuditor,
        db: Database,
        storage: LocalFSStorage,
        make_asset: MakeAsset,
    ) -> None:
        """Objects no asset references should be reported."""
        storage.put("assets/a.png", b"aa")
        storage.put("assets/b.png", b"bb")
        storage.put("assets/c.png", b"ccc")
        SyncEngine(db).push(SyncBatch(assets=[make_asset("a"), make_asset("b")]))

        report = auditor.find_orphans()

        assert [o.key for o in report.orphans] == ["assets/c.png"]
        assert report.summary.total_objects == 3
        assert report.summary.total_referenced_keys == 2
        assert report.summary.orphan_count == 1
        assert report.summary.orphan_size_bytes == 3

    def test_thumbnails_count_as_referenced(
        self,
        auditor: ConsistencyAuditor,
        db: Database,
        storage: LocalFSStorage,
        make_asset: MakeAsset,
    ) -> None:
        """A live asset's thumbnail is not an orphan."""
        storage.put("assets/a.png", b"a")
        storage.put("thumbs/a_256.webp", b"t")
        SyncEngine(db).push(
            SyncBatch(assets=[make_asset("a", thumb_blob_key="thumbs/a_256.webp")])
        )

        assert auditor.find_orphans().orphans == []

    def test_tombstoned_asset_blob_is_orphan(
        self,
        auditor: ConsistencyAuditor,
        db: Database,
        storage: LocalFSStorage,
        make_asset: MakeAsset,
    ) -> None:
        """Blobs of soft-deleted assets are no longer referenced."""
        storage.put("assets/a.png", b"a")
        SyncEngine(db).push(
            SyncBatch(assets=[make_asset("a", deleted=True, deleted_at=1000)])
        )

        assert [o.key for o in auditor.find_orphans().orphans] == ["assets/a.png"]

    def test_share_copies(
        self,
        auditor: ConsistencyAuditor,
        db: Database,
        storage: LocalFSStorage,
        make_asset: MakeAsset,
    ) -> None:
        """Copies of a live share are kept; copies of a deleted share are orphans."""
        storage.put("assets/a.png", b"a")
        SyncEngine(db).push(SyncBatch(assets=[make_asset("a")]))
        created = ShareManager(db, storage).create(["a"], base_url="http://test")
        storage.put("shared/gone0000/hasha.png", b"a")

        orphans = [o.key for o in auditor.find_orphans().orphans]

        assert orphans == ["shared/gone0000/hasha.png"]
        assert storage.exists(f"shared/{created.share_id}/hasha.png")

    def test_empty_store(self, auditor: ConsistencyAuditor) -> None:
        """An empty store has no orphans."""
        report = auditor.find_orphans()

        assert report.summary.total_objects == 0
        assert report.orphans == []


class TestFindMissingBlobs:
    """Tests for the missing-blob scan."""

    def test_reports_missing(
        self,
        auditor: ConsistencyAuditor,
        db: Database,
        storage: LocalFSStorage,
        make_asset: MakeAsset,
    ) -> None:
        """Assets whose blob is absent should be reported with their key."""
        storage.put("assets/a.png", b"a")
        SyncEngine(db).push(SyncBatch(assets=[make_asset("a"), make_asset("b")]))

        report = auditor.find_missing_blobs()

        assert [(m.asset_id, m.blob_key) for m in report.missing] == [("b", "assets/b.png")]
        assert report.summary.total_assets == 2
        assert report.summary.total_keys == 2
        assert report.summary.missing_count == 1

    def test_batches_cover_every_asset(
        self, db: Database, storage: LocalFSStorage, make_asset: MakeAsset
    ) -> None:
        """Batches smaller than the asset count still probe everything."""
        assets = [make_asset(f"a{i}") for i in range(5)]
        SyncEngine(db).push(SyncBatch(assets=assets))
        for asset in assets[:2]:
            storage.put(asset["blob_key"], b"x")

        report = ConsistencyAuditor(db, storage, batch_size=2).find_missing_blobs()

        assert sorted(m.asset_id for m in report.missing) == ["a2", "a3", "a4"]
        assert report.summary.total_assets == 5

    def test_probe_failure_counts_as_missing(
        self,
        auditor: ConsistencyAuditor,
        db: Database,
        storage: LocalFSStorage,
        make_asset: MakeAsset,
    ) -> None:
        """A failing existence check should report the blob as missing."""
        storage.put("assets/a.png", b"a")
        SyncEngine(db).push(SyncBatch(assets=[make_asset("a")]))

        with patch.object(storage, "head", side_effect=StorageIOError("timeout")):
            report = auditor.find_missing_blobs()

        assert report.summary.missing_count == 1

    def test_corrupt_metadata_counts_as_missing(
        self,
        auditor: ConsistencyAuditor,
        db: Database,
        storage: LocalFSStorage,
        make_asset: MakeAsset,
    ) -> None:
        """One unreadable object should not abort the scan of the others."""
        storage.put("assets/a.png", b"a")
        storage.put("assets/b.png", b"b")
        SyncEngine(db).push(SyncBatch(assets=[make_asset("a"), make_asset("b")]))
        (storage._base_path / "meta" / "assets" / "a.png.json").write_text("{trunc")

        report = auditor.find_missing_blobs()

        assert [m.asset_id for m in report.missing] == ["a"]
        assert report.summary.total_assets == 2

    def test_tombstones_are_not_checked(
        self, auditor: ConsistencyAuditor, db: Database, make_asset: MakeAsset
    ) -> None:
        """Deleted assets should not be probed."""
        SyncEngine(db).push(
            SyncBatch(assets=[make_asset("a", deleted=True, deleted_at=1000)])
        )

        assert auditor.find_missing_blobs().summary.total_assets == 0

    def test_rejects_invalid_batch_size(self, db: Database, storage: LocalFSStorage) -> None:
        """batch_size must be positive."""
        with pytest.raises(ValueError):
            ConsistencyAuditor(db, storage, batch_size=0)


class TestCloudAssets:
    """Tests for the cloud asset listing."""

    def test_lists_all_assets_with_summary(
        self, auditor: ConsistencyAuditor, db: Database, make_asset: MakeAsset
    ) -> None:
        """Every asset row, tombstones included, should be listed."""
        SyncEngine(db).push(
            SyncBatch(
                assets=[
                    make_asset("a"),
                    make_asset("b", deleted=True, deleted_at=1000),
                ]
            )
        )

        report = auditor.cloud_assets()

        assert {a.id for a in report.assets} == {"a", "b"}
        assert report.summary.total == 2
        assert report.summary.deleted == 1
        assert report.summary.with_blob == 2
