"""Health check API route."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from memesync.core.types import now_ms
from memesync.server.api.deps import get_device_registry
from memesync.server.devices import DeviceRegistry
from memesync.server.schemas import ApiResponse, HealthResponse, ok

router = APIRouter(tags=["health"])


@router.get("/health", response_model=ApiResponse)
def health_check(registry: DeviceRegistry = Depends(get_device_registry)) -> dict[str, Any]:
    """Check server health."""
    return ok(HealthResponse(status="ok", server_name=registry.server_name(), timestamp=now_ms()))
