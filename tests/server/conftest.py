"""Shared fixtures for server tests."""

from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from memesync.server.database import Database
from memesync.server.storage import LocalFSStorage


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def storage(tmp_path: Path) -> LocalFSStorage:
    """Create a test storage."""
    return LocalFSStorage(tmp_path / "storage")


@pytest.fixture
def make_asset() -> Callable[..., dict[str, Any]]:
    """Factory for asset records as a client would push them."""

    def _make(asset_id: str = "asset-1", **overrides: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "id": asset_id,
            "content_hash": f"hash{asset_id.replace('-', '')}",
            "file_name": f"{asset_id}.png",
            "mime_type": "image/png",
            "file_size": 100,
            "width": 64,
            "height": 48,
            "blob_key": f"assets/{asset_id}.png",
            "is_favorite": False,
            "use_count": 0,
            "created_at": 1000,
            "updated_at": 1000,
            "deleted": False,
        }
        record.update(overrides)
        return record

    return _make
