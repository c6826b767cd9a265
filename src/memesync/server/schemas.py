"""Pydantic schemas for API request/response models.

Every JSON response uses the envelope ``{"success": true, "data": ..., "message": ...}``
or ``{"success": false, "error": ...}``.
"""

from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

# === Envelope ===


class ApiResponse(BaseModel):
    """Successful response envelope."""

    success: bool = True
    data: Any = None
    message: str | None = None


class ErrorResponse(BaseModel):
    """Error response envelope."""

    success: bool = False
    error: str


def ok(data: Any = None, message: str | None = None) -> dict[str, Any]:
    """Wrap data (dataclasses and models included) in the success envelope."""
    return ApiResponse(success=True, data=jsonable_encoder(data), message=message).model_dump()


def fail(error: str) -> dict[str, Any]:
    """Build the error envelope."""
    return ErrorResponse(error=error).model_dump()


# === Auth schemas ===


class DeviceRegisterRequest(BaseModel):
    """Request body for device registration."""

    device_id: str | None = None
    device_name: str = Field(min_length=1)
    device_type: str = Field(min_length=1)
    platform: str = Field(min_length=1)
    sync_password: str | None = None


# === Sync schemas ===


class PullRequest(BaseModel):
    """Request body for a sync pull."""

    since: int = Field(default=0, ge=0)


# === Share schemas ===


class ShareCreateRequest(BaseModel):
    """Request body for share creation."""

    asset_ids: list[str] = Field(min_length=1)
    title: str | None = None
    description: str | None = None
    expires_in: int | None = None
    max_downloads: int | None = Field(default=None, ge=1)
    password: str | None = None


class ShareImportRequest(BaseModel):
    """Optional request body for a share import."""

    password: str | None = None


# === Blob schemas ===

MAX_BATCH_CHECK_KEYS = 100


class BatchCheckRequest(BaseModel):
    """Request body for a batched existence check."""

    keys: list[str]


class BlobStatus(BaseModel):
    """Existence of one object."""

    key: str
    exists: bool
    size: int | None = None


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    server_name: str
    timestamp: int
