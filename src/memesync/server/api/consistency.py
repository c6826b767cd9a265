"""Consistency audit API routes (read-only)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from memesync.server.api.deps import get_auditor, get_current_device
from memesync.server.consistency import ConsistencyAuditor
from memesync.server.schemas import ApiResponse, ok
from memesync.server.tokens import DeviceIdentity

router = APIRouter(prefix="/consistency", tags=["consistency"])


@router.get("/orphans", response_model=ApiResponse)
def find_orphans(
    auditor: ConsistencyAuditor = Depends(get_auditor),
    _auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Objects in the store that no live asset references."""
    return ok(auditor.find_orphans())


@router.get("/missing", response_model=ApiResponse)
def find_missing(
    auditor: ConsistencyAuditor = Depends(get_auditor),
    _auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Live assets whose blob is absent from the store."""
    return ok(auditor.find_missing_blobs())


@router.get("/assets", response_model=ApiResponse)
def cloud_assets(
    auditor: ConsistencyAuditor = Depends(get_auditor),
    _auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Every asset row, tombstones included."""
    return ok(auditor.cloud_assets())
