"""Tests for the sync engine (pull/push with last-write-wins)."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from memesync.server.database import Database
from memesync.server.errors import QuotaExceededError
from memesync.server.quota import QuotaEvaluator, QuotaLimits
from memesync.server.sync import AssetRecord, SettingRecord, SyncBatch, SyncEngine, TagRecord

MakeAsset = Callable[..., dict[str, Any]]


@pytest.fixture
def engine(db: Database) -> SyncEngine:
    """Sync engine without quotas."""
    return SyncEngine(db)


def _tag(tag_id: str = "tag-1", **overrides: Any) -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": tag_id,
        "name": "funny",
        "color": "#ff0000",
        "use_count": 1,
        "created_at": 1000,
        "updated_at": 1000,
    }
    record.update(overrides)
    return record


class TestPull:
    """Tests for SyncEngine.pull."""

    def test_pull_empty(self, engine: SyncEngine) -> None:
        """Pulling an empty pool should return no records and a timestamp."""
        result = engine.pull(0)

        assert result.total_count == 0
        assert result.server_timestamp > 0

    def test_pull_is_idempotent(self, engine: SyncEngine, make_asset: MakeAsset) -> None:
        """Two pulls with the same watermark should return identical records."""
        engine.push(SyncBatch(assets=[make_asset("a"), make_asset("b")], tags=[_tag()]))

        first = engine.pull(0)
        second = engine.pull(0)

        assert first.assets == second.assets
        assert first.tags == second.tags
        assert first.asset_tags == second.asset_tags
        assert first.settings == second.settings

    def test_pull_since_watermark(self, engine: SyncEngine, make_asset: MakeAsset) -> None:
        """Only records changed strictly after since should be returned."""
        engine.push(
            SyncBatch(
                assets=[
                    make_asset("a", updated_at=1000),
                    make_asset("b", updated_at=2000),
                    make_asset("c", updated_at=3000),
                ]
            )
        )

        result = engine.pull(2000)

        assert [a.id for a in result.assets] == ["c"]
        assert result.total_count == 1

    def test_pull_orders_ascending(self, engine: SyncEngine, make_asset: MakeAsset) -> None:
        """Records should be ordered by change timestamp, oldest first."""
        engine.push(
            SyncBatch(
                assets=[
                    make_asset("late", updated_at=5000),
                    make_asset("early", updated_at=2000),
                ]
            )
        )

        assert [a.id for a in engine.pull(0).assets] == ["early", "late"]


class TestPush:
    """Tests for SyncEngine.push."""

    def test_round_trip(self, engine: SyncEngine, make_asset: MakeAsset) -> None:
        """Every pushed record should be present, content-equal, in a full pull."""
        asset = make_asset("a", is_favorite=True, favorited_at=1500, origin_device="dev-1")
        tag = _tag()
        link = {"asset_id": "a", "tag_id": "tag-1", "created_at": 1200}
        setting = {"key": "theme", "value": "dark", "updated_at": 1300}

        result = engine.push(
            SyncBatch(assets=[asset], tags=[tag], asset_tags=[link], settings=[setting]),
            device_id="dev-1",
        )
        pulled = engine.pull(0)

        assert result.synced_count == 4
        assert result.failed_count == 0
        assert pulled.assets == [AssetRecord.model_validate(asset)]
        assert pulled.tags == [TagRecord.model_validate(tag)]
        assert [(link.asset_id, link.tag_id) for link in pulled.asset_tags] == [("a", "tag-1")]
        assert pulled.settings == [SettingRecord.model_validate(setting)]

    def test_newer_version_wins(self, engine: SyncEngine, make_asset: MakeAsset) -> None:
        """A newer updated_at should overwrite the stored record."""
        engine.push(SyncBatch(assets=[make_asset("a", file_name="old.png", updated_at=1000)]))
        engine.push(SyncBatch(assets=[make_asset("a", file_name="new.png", updated_at=2000)]))

        assert engine.pull(0).assets[0].file_name == "new.png"

    def test_older_version_is_discarded(self, engine: SyncEngine, make_asset: MakeAsset) -> None:
        """An older updated_at should leave the stored record untouched."""
        engine.push(SyncBatch(assets=[make_asset("a", file_name="t1.png", updated_at=2000)]))
        result = engine.push(
            SyncBatch(assets=[make_asset("a", file_name="t0.png", updated_at=1000)])
        )

        assets = engine.pull(0).assets
        assert result.failed_count == 0
        assert len(assets) == 1
        assert assets[0].file_name == "t1.png"
        assert assets[0].updated_at == 2000

    def test_equal_timestamp_does_not_overwrite(
        self, engine: SyncEngine, make_asset: MakeAsset
    ) -> None:
        """Overwrites require a strictly newer timestamp."""
        engine.push(SyncBatch(assets=[make_asset("a", file_name="first.png", updated_at=2000)]))
        engine.push(SyncBatch(assets=[make_asset("a", file_name="second.png", updated_at=2000)]))

        assert engine.pull(0).assets[0].file_name == "first.png"

    def test_lww_applies_to_tags_and_settings(self, engine: SyncEngine) -> None:
        """Tags and settings should follow the same timestamp guard."""
        engine.push(
            SyncBatch(
                tags=[_tag(name="new", updated_at=2000)],
                settings=[{"key": "theme", "value": "dark", "updated_at": 2000}],
            )
        )
        engine.push(
            SyncBatch(
                tags=[_tag(name="stale", updated_at=1500)],
                settings=[{"key": "theme", "value": "light", "updated_at": 1500}],
            )
        )

        pulled = engine.pull(0)
        assert pulled.tags[0].name == "new"
        assert pulled.settings[0].value == "dark"

    def test_tombstone_is_synced(self, engine: SyncEngine, make_asset: MakeAsset) -> None:
        """A newer tombstone should soft-delete the asset and keep its row."""
        engine.push(SyncBatch(assets=[make_asset("a", updated_at=1000)]))
        engine.push(
            SyncBatch(assets=[make_asset("a", deleted=True, deleted_at=3000, updated_at=3000)])
        )

        assets = engine.pull(0).assets
        assert len(assets) == 1
        assert assets[0].deleted is True
        assert assets[0].deleted_at == 3000

    def test_duplicate_link_is_ignored(self, engine: SyncEngine) -> None:
        """Pushing the same link twice should neither fail nor duplicate."""
        link = {"asset_id": "a", "tag_id": "t", "created_at": 1000}

        first = engine.push(SyncBatch(asset_tags=[link]))
        second = engine.push(SyncBatch(asset_tags=[link, link]))

        assert first.failed_count == 0
        assert second.failed_count == 0
        assert len(engine.pull(0).asset_tags) == 1

    def test_asset_without_blob_key_is_skipped(
        self, engine: SyncEngine, make_asset: MakeAsset
    ) -> None:
        """A record missing its blob reference should be skipped individually."""
        bad = make_asset("bad")
        del bad["blob_key"]

        result = engine.push(SyncBatch(assets=[make_asset("good"), bad]))

        assert result.synced_count == 1
        assert result.skipped_count == 1
        assert [a.id for a in engine.pull(0).assets] == ["good"]

    def test_malformed_records_are_skipped(
        self, engine: SyncEngine, make_asset: MakeAsset
    ) -> None:
        """Records with wrong types or impossible timestamps should be skipped."""
        result = engine.push(
            SyncBatch(
                assets=[
                    make_asset("neg", file_size=-5),
                    make_asset("time", created_at=5000, updated_at=1000),
                ],
                tags=[{"id": "t-no-name", "created_at": 1, "updated_at": 1}],
                settings=[{"key": "theme", "updated_at": 1}],
            )
        )

        assert result.synced_count == 0
        assert result.skipped_count == 4
        assert engine.pull(0).total_count == 0

    def test_origin_device_is_set_on_insert_only(
        self, engine: SyncEngine, db: Database, make_asset: MakeAsset
    ) -> None:
        """origin_device should record the first pusher and never change."""
        engine.push(SyncBatch(assets=[make_asset("a", updated_at=1000)]), device_id="dev-1")
        engine.push(SyncBatch(assets=[make_asset("a", updated_at=2000)]), device_id="dev-2")

        asset = db.get_asset("a")
        assert asset is not None
        assert asset.origin_device == "dev-1"
        assert asset.updated_at == 2000

    def test_statement_failure_is_best_effort(self, engine: SyncEngine, db: Database) -> None:
        """A failing upsert should be counted while the rest of the batch persists."""
        original_execute = db.execute
        calls: list[object] = []

        def flaky_execute(statement: object) -> None:
            calls.append(statement)
            if len(calls) == 2:
                raise SQLAlchemyError("simulated failure")
            original_execute(statement)  # type: ignore[arg-type]

        with patch.object(db, "execute", side_effect=flaky_execute):
            result = engine.push(SyncBatch(tags=[_tag("t1"), _tag("t2"), _tag("t3")]))

        assert result.synced_count == 3
        assert result.failed_count == 1
        assert [t.id for t in engine.pull(0).tags] == ["t1", "t3"]


class TestPushQuota:
    """Tests for the quota gate on push."""

    @pytest.fixture
    def limited_engine(self, db: Database) -> SyncEngine:
        """Sync engine with a ceiling of three assets."""
        return SyncEngine(db, QuotaEvaluator(db, QuotaLimits(max_assets=3)))

    def test_push_up_to_limit_succeeds(
        self, limited_engine: SyncEngine, db: Database, make_asset: MakeAsset
    ) -> None:
        """Pushing exactly N assets should succeed."""
        result = limited_engine.push(
            SyncBatch(assets=[make_asset("a"), make_asset("b"), make_asset("c")])
        )

        assert result.synced_count == 3
        assert db.count_active_assets() == 3

    def test_push_over_limit_is_rejected(
        self, limited_engine: SyncEngine, db: Database, make_asset: MakeAsset
    ) -> None:
        """Pushing past N should reject the whole push and write nothing."""
        batch = SyncBatch(assets=[make_asset(f"a{i}") for i in range(4)], tags=[_tag()])

        with pytest.raises(QuotaExceededError, match="Asset limit"):
            limited_engine.push(batch)

        assert db.count_active_assets() == 0
        assert db.tags_changed_since(0) == []

    def test_updates_do_not_count_as_new(
        self, limited_engine: SyncEngine, db: Database, make_asset: MakeAsset
    ) -> None:
        """Updating existing assets at the limit should still be allowed."""
        limited_engine.push(SyncBatch(assets=[make_asset(f"a{i}") for i in range(3)]))

        result = limited_engine.push(
            SyncBatch(assets=[make_asset("a0", use_count=5, updated_at=2000)])
        )

        assert result.synced_count == 1
        with pytest.raises(QuotaExceededError):
            limited_engine.push(SyncBatch(assets=[make_asset("a3")]))
        assert db.count_active_assets() == 3

    def test_storage_limit(self, db: Database, make_asset: MakeAsset) -> None:
        """New bytes beyond the storage ceiling should reject the push."""
        engine = SyncEngine(db, QuotaEvaluator(db, QuotaLimits(max_storage_bytes=150)))

        engine.push(SyncBatch(assets=[make_asset("a", file_size=100)]))
        with pytest.raises(QuotaExceededError, match="Storage"):
            engine.push(SyncBatch(assets=[make_asset("b", file_size=100)]))

    def test_reviving_tombstone_counts_against_limit(
        self, db: Database, make_asset: MakeAsset
    ) -> None:
        """Un-deleting an asset at the ceiling should be rejected."""
        engine = SyncEngine(db, QuotaEvaluator(db, QuotaLimits(max_assets=1)))
        engine.push(SyncBatch(assets=[make_asset("a")]))
        engine.push(SyncBatch(assets=[make_asset("b", deleted=True, deleted_at=1000)]))

        with pytest.raises(QuotaExceededError, match="Asset limit"):
            engine.push(SyncBatch(assets=[make_asset("b", updated_at=2000)]))

        assert db.count_active_assets() == 1

    def test_tombstone_in_same_push_frees_a_slot(
        self, db: Database, make_asset: MakeAsset
    ) -> None:
        """Deleting one asset while adding another at the ceiling is allowed."""
        engine = SyncEngine(db, QuotaEvaluator(db, QuotaLimits(max_assets=1)))
        engine.push(SyncBatch(assets=[make_asset("a")]))

        engine.push(
            SyncBatch(
                assets=[
                    make_asset("a", deleted=True, deleted_at=2000, updated_at=2000),
                    make_asset("b"),
                ]
            )
        )

        assert db.count_active_assets() == 1

    def test_growing_an_asset_counts_against_storage(
        self, db: Database, make_asset: MakeAsset
    ) -> None:
        """Raising file_size on an existing asset is checked against the ceiling."""
        engine = SyncEngine(db, QuotaEvaluator(db, QuotaLimits(max_storage_bytes=150)))
        engine.push(SyncBatch(assets=[make_asset("a", file_size=100)]))

        with pytest.raises(QuotaExceededError, match="Storage"):
            engine.push(SyncBatch(assets=[make_asset("a", file_size=10000, updated_at=2000)]))

        engine.push(SyncBatch(assets=[make_asset("a", file_size=150, updated_at=2000)]))
        assert db.active_storage_bytes() == 150

    def test_quota_lookup_error_allows_push(
        self, limited_engine: SyncEngine, db: Database, make_asset: MakeAsset
    ) -> None:
        """A database error while projecting usage should not block the push."""
        with patch.object(db, "get_assets", side_effect=SQLAlchemyError("boom")):
            result = limited_engine.push(SyncBatch(assets=[make_asset("a")]))

        assert result.synced_count == 1
        assert db.count_active_assets() == 1
