"""Command-line interface for MemeSync server administration.

Commands:
- serve: Run the HTTP server
- config show|set-name|set-sync-password|clear-sync-password: Edit server_config
- audit orphans|missing: Run a consistency check and print a summary
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from memesync.server.database import Database
    from memesync.server.storage import ObjectStorage

DB_PATH_HELP = "Path to database file (default: MEMESYNC_DB_PATH or ./memesync.db)."
STORAGE_PATH_HELP = (
    "Path to local storage (default: MEMESYNC_S3_* if a bucket is set, "
    "else MEMESYNC_STORAGE_PATH or ./storage)."
)


def _resolve_db_path(db_path: str | None) -> Path:
    return Path(db_path or os.environ.get("MEMESYNC_DB_PATH", "memesync.db"))


@click.group()
@click.version_option(package_name="memesync")
def cli() -> None:
    """MemeSync - Multi-device meme library sync server."""


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address.")
@click.option("--port", "-p", type=int, default=8000, show_default=True, help="Bind port.")
def serve(host: str, port: int) -> None:
    """Run the MemeSync server.

    Settings are read from MEMESYNC_* environment variables.
    """
    import uvicorn

    uvicorn.run("memesync.server.app:app_factory", factory=True, host=host, port=port)


# === Config commands ===


@cli.group()
def config() -> None:
    """Server configuration stored in the database."""


@config.command("show")
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def config_show(db_path: str | None) -> None:
    """Show every server_config value (password hashes are masked)."""
    from memesync.core.types import ConfigKey
    from memesync.server.database import Database

    db = Database(_resolve_db_path(db_path))
    try:
        for row in db.list_config():
            value = row.value
            if row.key == ConfigKey.SYNC_PASSWORD_HASH.value and value:
                value = "********"
            click.echo(f"{row.key} = {value}")
    finally:
        db.close()


@config.command("set-name")
@click.argument("name")
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def config_set_name(name: str, db_path: str | None) -> None:
    """Set the server name returned to devices."""
    from memesync.core.types import ConfigKey
    from memesync.server.database import Database

    if not name.strip():
        click.echo("Error: Server name must not be empty", err=True)
        sys.exit(1)

    db = Database(_resolve_db_path(db_path))
    try:
        db.set_config(ConfigKey.SERVER_NAME.value, name.strip())
        click.echo(f"Server name set to: {name.strip()}")
    finally:
        db.close()


@config.command("set-sync-password")
@click.option(
    "--password",
    prompt="Sync password",
    hide_input=True,
    confirmation_prompt=True,
    help="Shared password devices must present to register.",
)
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def config_set_sync_password(password: str, db_path: str | None) -> None:
    """Require a shared sync password for device registration."""
    from memesync.server.database import Database
    from memesync.server.devices import set_sync_password
    from memesync.server.errors import ValidationError

    db = Database(_resolve_db_path(db_path))
    try:
        set_sync_password(db, password)
        click.echo("Sync password set. New devices must now provide it to register.")
    except ValidationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    finally:
        db.close()


@config.command("clear-sync-password")
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def config_clear_sync_password(db_path: str | None) -> None:
    """Allow device registration without a sync password."""
    from memesync.server.database import Database
    from memesync.server.devices import clear_sync_password

    db = Database(_resolve_db_path(db_path))
    try:
        clear_sync_password(db)
        click.echo("Sync password cleared. Devices can register without it.")
    finally:
        db.close()


# === Audit commands ===


def _open_audit_stores(
    db_path: str | None,
    storage_path: str | None,
) -> tuple[Database, ObjectStorage]:
    from memesync.server.config import build_storage_config
    from memesync.server.database import Database
    from memesync.server.storage import LocalFSStorage, create_storage

    db_file = _resolve_db_path(db_path)
    if not db_file.exists():
        click.echo(f"Error: Database not found: {db_file}", err=True)
        click.echo("Make sure the server has been run at least once.", err=True)
        sys.exit(1)

    if storage_path:
        storage = LocalFSStorage(storage_path)
    else:
        storage = create_storage(build_storage_config(os.environ))

    click.echo(f"Database: {db_file}")
    click.echo(f"Storage: {storage.location}")
    return Database(db_file), storage


@cli.group()
def audit() -> None:
    """Consistency checks between the database and the object store.

    Checks are read-only: they report discrepancies and never fix them.
    """


@audit.command("orphans")
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
@click.option("--storage-path", type=click.Path(), default=None, help=STORAGE_PATH_HELP)
@click.option("--verbose", "-v", is_flag=True, help="List every orphaned key.")
def audit_orphans(db_path: str | None, storage_path: str | None, verbose: bool) -> None:
    """Find objects that no live asset references."""
    from memesync.server.consistency import ConsistencyAuditor

    db, storage = _open_audit_stores(db_path, storage_path)
    try:
        report = ConsistencyAuditor(db, storage).find_orphans()
    finally:
        db.close()

    summary = report.summary
    click.echo(f"Objects in store:  {summary.total_objects}")
    click.echo(f"Referenced keys:   {summary.total_referenced_keys}")
    click.echo(f"Orphaned objects:  {summary.orphan_count} ({summary.orphan_size_bytes} bytes)")
    if verbose:
        for orphan in report.orphans:
            click.echo(f"  {orphan.key} ({orphan.size} bytes)")


@audit.command("missing")
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
@click.option("--storage-path", type=click.Path(), default=None, help=STORAGE_PATH_HELP)
@click.option("--verbose", "-v", is_flag=True, help="List every affected asset.")
def audit_missing(db_path: str | None, storage_path: str | None, verbose: bool) -> None:
    """Find live assets whose blob is absent from the store."""
    from memesync.server.consistency import ConsistencyAuditor

    db, storage = _open_audit_stores(db_path, storage_path)
    try:
        report = ConsistencyAuditor(db, storage).find_missing_blobs()
    finally:
        db.close()

    summary = report.summary
    click.echo(f"Assets checked:    {summary.total_assets}")
    click.echo(f"Missing blobs:     {summary.missing_count}")
    if verbose:
        for item in report.missing:
            click.echo(f"  {item.asset_id}: {item.blob_key}")


if __name__ == "__main__":
    cli()
