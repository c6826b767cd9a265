"""Sync pull/push API routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from memesync.server.api.deps import get_current_device, get_sync_engine
from memesync.server.schemas import ApiResponse, PullRequest, ok
from memesync.server.sync import SyncBatch, SyncEngine
from memesync.server.tokens import DeviceIdentity

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/pull", response_model=ApiResponse)
def pull(
    request: PullRequest,
    engine: SyncEngine = Depends(get_sync_engine),
    _auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Get every record changed after the given watermark."""
    result = engine.pull(request.since)
    return ok(
        {
            "assets": result.assets,
            "tags": result.tags,
            "asset_tags": result.asset_tags,
            "settings": result.settings,
            "server_timestamp": result.server_timestamp,
            "total_count": result.total_count,
        }
    )


@router.post("/push", response_model=ApiResponse)
def push(
    batch: SyncBatch,
    engine: SyncEngine = Depends(get_sync_engine),
    auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Merge client records into the shared state."""
    result = engine.push(batch, device_id=auth.device_id)
    return ok(
        {
            "synced_count": result.synced_count,
            "skipped_count": result.skipped_count,
            "failed_count": result.failed_count,
            "server_timestamp": result.server_timestamp,
        },
        message=f"Synced {result.synced_count} records",
    )
