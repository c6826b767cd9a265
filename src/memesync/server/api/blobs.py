"""Blob storage API routes.

Reads by key are public so share links work without a token; uploads,
downloads as attachments, batch checks and deletes require one.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request, Response

from memesync.core.types import file_extension
from memesync.server.api.deps import get_current_device, get_storage, public_base_url
from memesync.server.errors import MemeSyncError, NotFoundError, ValidationError
from memesync.server.schemas import (
    MAX_BATCH_CHECK_KEYS,
    ApiResponse,
    BatchCheckRequest,
    BlobStatus,
    ok,
)
from memesync.server.storage import (
    DEFAULT_CONTENT_TYPE,
    ObjectInfo,
    ObjectStorage,
    validate_key,
)
from memesync.server.tokens import DeviceIdentity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/blobs", tags=["blobs"])

CACHE_CONTROL = "public, max-age=31536000"


def asset_blob_key(content_hash: str, file_name: str) -> str:
    """Storage location of an uploaded original."""
    return f"assets/{content_hash}.{file_extension(file_name, 'bin')}"


def thumb_blob_key(content_hash: str) -> str:
    """Storage location of an uploaded thumbnail."""
    return f"thumbs/{content_hash}_256.webp"


def attachment_disposition(file_name: str) -> str:
    """Content-Disposition for a download, with an RFC 5987 UTF-8 name."""
    fallback = "".join(
        c if c.isascii() and c.isprintable() and c not in '"\\' else "_" for c in file_name
    )
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(file_name, safe='')}"


def _object_headers(info: ObjectInfo) -> dict[str, str]:
    headers = {"Cache-Control": CACHE_CONTROL}
    if info.etag:
        etag = info.etag if info.etag.startswith('"') else f'"{info.etag}"'
        headers["ETag"] = etag
    return headers


@router.post("/upload", response_model=ApiResponse)
async def upload_blob(
    request: Request,
    storage: ObjectStorage = Depends(get_storage),
    _auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Upload an original (or, with X-Blob-Kind: thumbnail, a thumbnail)."""
    content_hash = request.headers.get("x-content-hash")
    if not content_hash:
        raise ValidationError("Missing X-Content-Hash header")
    if not content_hash.isalnum():
        raise ValidationError("X-Content-Hash must be alphanumeric")
    file_name = request.headers.get("x-file-name") or "unknown"
    content_type = request.headers.get("content-type") or DEFAULT_CONTENT_TYPE

    data = await request.body()
    if not data:
        raise ValidationError("Empty upload")

    thumb_key = thumb_blob_key(content_hash)
    if request.headers.get("x-blob-kind", "original").lower() == "thumbnail":
        key = thumb_key
        content_type = "image/webp"
    else:
        key = asset_blob_key(content_hash, file_name)

    info = storage.put(key, data, content_type)
    logger.info("Stored %s (%d bytes)", key, info.size)
    return ok(
        {
            "blob_key": key,
            "thumb_blob_key": thumb_key,
            "size": info.size,
            "url": f"{public_base_url(request)}/blobs/{key}",
        },
        message="Upload complete",
    )


@router.post("/batch-check", response_model=ApiResponse)
def batch_check(
    body: BatchCheckRequest,
    storage: ObjectStorage = Depends(get_storage),
    _auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Check existence of up to 100 keys."""
    if len(body.keys) > MAX_BATCH_CHECK_KEYS:
        raise ValidationError(f"At most {MAX_BATCH_CHECK_KEYS} keys per request")

    results: list[BlobStatus] = []
    for key in body.keys:
        try:
            info = storage.head(key)
        except MemeSyncError as e:
            logger.warning("Existence check failed for %s: %s", key, e.message)
            info = None
        results.append(
            BlobStatus(key=key, exists=info is not None, size=info.size if info else None)
        )

    existing = sum(1 for r in results if r.exists)
    return ok(
        {
            "results": results,
            "summary": {
                "total": len(results),
                "exists": existing,
                "missing": len(results) - existing,
            },
        }
    )


# Note: download route must be before the generic {key:path} route
@router.get("/download/{key:path}")
def download_blob(
    key: str,
    storage: ObjectStorage = Depends(get_storage),
    _auth: DeviceIdentity = Depends(get_current_device),
) -> Response:
    """Download an object as an attachment."""
    stored = storage.get(validate_key(key))
    headers = {"Content-Disposition": attachment_disposition(key.rsplit("/", 1)[-1])}
    return Response(
        content=stored.data,
        media_type=stored.info.content_type or DEFAULT_CONTENT_TYPE,
        headers=headers,
    )


@router.get("/{key:path}")
def read_blob(
    key: str,
    storage: ObjectStorage = Depends(get_storage),
) -> Response:
    """Read an object; public, with long-lived cache headers."""
    stored = storage.get(validate_key(key))
    return Response(
        content=stored.data,
        media_type=stored.info.content_type or DEFAULT_CONTENT_TYPE,
        headers=_object_headers(stored.info),
    )


@router.delete("/{key:path}", response_model=ApiResponse)
def delete_blob(
    key: str,
    storage: ObjectStorage = Depends(get_storage),
    _auth: DeviceIdentity = Depends(get_current_device),
) -> dict[str, Any]:
    """Delete an object."""
    if not storage.delete(validate_key(key)):
        raise NotFoundError(f"Object not found: {key}")
    logger.info("Deleted %s", key)
    return ok({"key": key}, message="Deleted")
