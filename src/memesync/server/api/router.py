"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from memesync.server.api import auth, blobs, consistency, health, quota, shares, sync
from memesync.server.api.deps import enforce_request_rate

# Every route counts against the per-IP request ceiling
router = APIRouter(dependencies=[Depends(enforce_request_rate)])

# Include all API routers
router.include_router(health.router)
router.include_router(auth.router)
router.include_router(sync.router)
router.include_router(shares.router)
router.include_router(shares.public_router)
router.include_router(quota.router)
router.include_router(blobs.router)
router.include_router(consistency.router)
