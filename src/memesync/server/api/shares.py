"""Share API routes.

Management routes live under /share and require a device token. The public
view is served at /s/{share_id} and imports need no token.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from memesync.server.api.deps import (
    client_ip,
    get_current_device,
    get_share_manager,
    public_base_url,
)
from memesync.server.schemas import ApiResponse, ShareCreateRequest, ShareImportRequest, ok
from memesync.server.shares import ShareManager
from memesync.server.tokens import DeviceIdentity

router = APIRouter(prefix="/share", tags=["shares"])
public_router = APIRouter(tags=["shares"])


@router.post("/create", response_model=ApiResponse)
def create_share(
    body: ShareCreateRequest,
    request: Request,
    manager: ShareManager = Depends(get_share_manager),
    auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Create a public share over existing assets."""
    created = manager.create(
        asset_ids=body.asset_ids,
        base_url=public_base_url(request),
        title=body.title,
        description=body.description,
        expires_in=body.expires_in,
        max_downloads=body.max_downloads,
        password=body.password,
        device_id=auth.device_id,
    )
    return ok(created, message="Share created")


# Note: /list must be declared before /{share_id}
@router.get("/list", response_model=ApiResponse)
def list_shares(
    manager: ShareManager = Depends(get_share_manager),
    _auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """List every share with its asset count."""
    shares = manager.list_shares()
    return ok({"shares": shares, "total": len(shares)})


@router.delete("/{share_id}", response_model=ApiResponse)
def delete_share(
    share_id: str,
    manager: ShareManager = Depends(get_share_manager),
    _auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Delete a share and its public copies."""
    removed = manager.delete(share_id)
    return ok({"share_id": share_id, "removed_objects": removed}, message="Share deleted")


@router.post("/{share_id}/import", response_model=ApiResponse)
def import_share(
    share_id: str,
    request: Request,
    body: ShareImportRequest | None = None,
    manager: ShareManager = Depends(get_share_manager),
) -> dict[str, Any]:
    """Claim the assets of a share, counting one download."""
    imported = manager.import_share(
        share_id,
        base_url=public_base_url(request),
        password=body.password if body else None,
    )
    return ok(imported, message=f"Imported {imported.imported_count} assets")


@public_router.get("/s/{share_id}", response_model=ApiResponse)
def view_share(
    share_id: str,
    request: Request,
    password: str | None = None,
    manager: ShareManager = Depends(get_share_manager),
) -> dict[str, Any]:
    """Public view of a share, counting one view."""
    view = manager.get(
        share_id,
        base_url=public_base_url(request),
        password=password,
        client_ip=client_ip(request),
    )
    return ok(view)
