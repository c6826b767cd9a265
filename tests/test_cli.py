"""Tests for CLI commands - config and audit."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from memesync.cli import cli
from memesync.core.crypto import verify_password
from memesync.core.types import ConfigKey
from memesync.server.database import Database
from memesync.server.models import Asset
from memesync.server.storage import LocalFSStorage


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Create an initialized database and return its path."""
    path = tmp_path / "memesync.db"
    Database(path).close()
    return path


def _config(db_path: Path, key: ConfigKey) -> str | None:
    db = Database(db_path)
    try:
        return db.get_config(key.value)
    finally:
        db.close()


class TestServeCommand:
    """Tests for 'memesync serve' command."""

    def test_serve_runs_uvicorn_factory(self, runner: CliRunner) -> None:
        """serve should start uvicorn in factory mode."""
        with patch("uvicorn.run") as mock_run:
            result = runner.invoke(cli, ["serve", "--port", "9000"])

        assert result.exit_code == 0
        mock_run.assert_called_once_with(
            "memesync.server.app:app_factory", factory=True, host="0.0.0.0", port=9000
        )


class TestConfigCommands:
    """Tests for 'memesync config' commands."""

    def test_show(self, runner: CliRunner, db_path: Path) -> None:
        result = runner.invoke(cli, ["config", "show", "--db-path", str(db_path)])

        assert result.exit_code == 0
        assert "server_name = MemeSync" in result.output
        assert "require_sync_password = false" in result.output

    def test_set_name(self, runner: CliRunner, db_path: Path) -> None:
        result = runner.invoke(cli, ["config", "set-name", "Meme Vault", "--db-path", str(db_path)])

        assert result.exit_code == 0
        assert _config(db_path, ConfigKey.SERVER_NAME) == "Meme Vault"

    def test_set_empty_name(self, runner: CliRunner, db_path: Path) -> None:
        result = runner.invoke(cli, ["config", "set-name", "  ", "--db-path", str(db_path)])

        assert result.exit_code == 1
        assert "must not be empty" in result.output

    def test_set_sync_password(self, runner: CliRunner, db_path: Path) -> None:
        """The password should be prompted twice and stored hashed."""
        result = runner.invoke(
            cli,
            ["config", "set-sync-password", "--db-path", str(db_path)],
            input="s3cret\ns3cret\n",
        )

        assert result.exit_code == 0
        assert _config(db_path, ConfigKey.REQUIRE_SYNC_PASSWORD) == "true"
        stored = _config(db_path, ConfigKey.SYNC_PASSWORD_HASH)
        assert stored
        assert verify_password("s3cret", stored)

    def test_show_masks_password_hash(self, runner: CliRunner, db_path: Path) -> None:
        runner.invoke(
            cli,
            ["config", "set-sync-password", "--password", "s3cret", "--db-path", str(db_path)],
        )

        result = runner.invoke(cli, ["config", "show", "--db-path", str(db_path)])

        assert "sync_password_hash = ********" in result.output
        assert "argon2" not in result.output

    def test_clear_sync_password(self, runner: CliRunner, db_path: Path) -> None:
        runner.invoke(
            cli,
            ["config", "set-sync-password", "--password", "s3cret", "--db-path", str(db_path)],
        )

        result = runner.invoke(cli, ["config", "clear-sync-password", "--db-path", str(db_path)])

        assert result.exit_code == 0
        assert _config(db_path, ConfigKey.REQUIRE_SYNC_PASSWORD) == "false"
        assert _config(db_path, ConfigKey.SYNC_PASSWORD_HASH) == ""


class TestAuditCommands:
    """Tests for 'memesync audit' commands."""

    @pytest.fixture
    def storage_path(self, tmp_path: Path, db_path: Path) -> Path:
        """A store with one referenced, one orphaned and one missing blob."""
        path = tmp_path / "storage"
        storage = LocalFSStorage(path)
        storage.put("assets/a.png", b"aaaa")
        storage.put("assets/stray.png", b"stray")

        db = Database(db_path)
        try:
            for asset_id in ("a", "b"):
                db.execute(
                    sqlite_insert(Asset).values(
                        id=asset_id,
                        content_hash=f"h{asset_id}",
                        file_name=f"{asset_id}.png",
                        mime_type="image/png",
                        blob_key=f"assets/{asset_id}.png",
                        created_at=1000,
                        updated_at=1000,
                    )
                )
        finally:
            db.close()
        return path

    def test_orphans(self, runner: CliRunner, db_path: Path, storage_path: Path) -> None:
        result = runner.invoke(
            cli,
            [
                "audit",
                "orphans",
                "-v",
                "--db-path",
                str(db_path),
                "--storage-path",
                str(storage_path),
            ],
        )

        assert result.exit_code == 0
        assert "Objects in store:  2" in result.output
        assert "Orphaned objects:  1 (5 bytes)" in result.output
        assert "assets/stray.png" in result.output

    def test_missing(self, runner: CliRunner, db_path: Path, storage_path: Path) -> None:
        result = runner.invoke(
            cli,
            [
                "audit",
                "missing",
                "-v",
                "--db-path",
                str(db_path),
                "--storage-path",
                str(storage_path),
            ],
        )

        assert result.exit_code == 0
        assert "Assets checked:    2" in result.output
        assert "Missing blobs:     1" in result.output
        assert "b: assets/b.png" in result.output

    def test_missing_database(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(
            cli,
            ["audit", "orphans", "--db-path", str(tmp_path / "absent.db")],
        )

        assert result.exit_code == 1
        assert "Database not found" in result.output
