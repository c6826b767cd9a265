"""Device registration and identity API routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from memesync.server.api.deps import get_current_device, get_db, get_device_registry
from memesync.server.database import Database
from memesync.server.devices import DeviceRegistry
from memesync.server.errors import NotFoundError
from memesync.server.schemas import ApiResponse, DeviceRegisterRequest, ok
from memesync.server.tokens import DeviceIdentity

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/device-register", response_model=ApiResponse)
def register_device(
    request: DeviceRegisterRequest,
    registry: DeviceRegistry = Depends(get_device_registry),
) -> dict[str, Any]:
    """Register or refresh a device and issue a token."""
    registration = registry.register(
        device_name=request.device_name,
        device_type=request.device_type,
        platform=request.platform,
        device_id=request.device_id,
        sync_password=request.sync_password,
    )
    return ok(
        {
            "device_id": registration.device_id,
            "token": registration.token,
            "expires_at": registration.expires_at,
            "server_name": registration.server_name,
            "require_sync_password": registration.require_sync_password,
        },
        message="Device registered" if registration.created else "Device updated",
    )


@router.get("/me", response_model=ApiResponse)
def current_device(
    db: Database = Depends(get_db),
    identity: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Get the calling device."""
    device = db.get_device(identity.device_id)
    if device is None:
        raise NotFoundError("Device not found")
    return ok(
        {
            "device_id": device.device_id,
            "device_name": device.device_name,
            "device_type": device.device_type,
            "platform": device.platform,
            "created_at": device.created_at,
            "last_seen_at": device.last_seen_at,
            "token_expires_at": identity.expires_at,
        }
    )
