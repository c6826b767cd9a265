"""Quota API route."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from memesync.server.api.deps import get_current_device, get_quota
from memesync.server.quota import QuotaEvaluator
from memesync.server.schemas import ApiResponse, ok
from memesync.server.tokens import DeviceIdentity

router = APIRouter(prefix="/quota", tags=["quota"])


@router.get("/info", response_model=ApiResponse)
def quota_info(
    quota: QuotaEvaluator = Depends(get_quota),
    _auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Report used / limit / percentage for assets, storage and shares."""
    return ok(quota.quota_info())
