"""FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from memesync.server.config import ServerSettings
from memesync.server.consistency import ConsistencyAuditor
from memesync.server.database import Database
from memesync.server.devices import DeviceRegistry
from memesync.server.errors import AuthError, RateLimitError
from memesync.server.quota import QuotaEvaluator
from memesync.server.shares import ShareManager
from memesync.server.storage import ObjectStorage
from memesync.server.sync import SyncEngine
from memesync.server.tokens import DeviceIdentity, TokenService

# Security scheme
security = HTTPBearer(auto_error=False)


def get_db(request: Request) -> Database:
    """Get database from app state."""
    db: Database = request.app.state.db
    return db


def get_storage(request: Request) -> ObjectStorage:
    """Get object storage from app state."""
    storage: ObjectStorage = request.app.state.storage
    return storage


def get_settings(request: Request) -> ServerSettings:
    """Get static settings from app state."""
    settings: ServerSettings = request.app.state.settings
    return settings


def get_tokens(request: Request) -> TokenService:
    """Get token service from app state."""
    tokens: TokenService = request.app.state.tokens
    return tokens


def get_quota(request: Request) -> QuotaEvaluator:
    """Get quota evaluator from app state."""
    quota: QuotaEvaluator = request.app.state.quota
    return quota


def get_sync_engine(
    db: Database = Depends(get_db),
    quota: QuotaEvaluator = Depends(get_quota),
) -> SyncEngine:
    return SyncEngine(db, quota)


def get_share_manager(
    db: Database = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
    quota: QuotaEvaluator = Depends(get_quota),
) -> ShareManager:
    return ShareManager(db, storage, quota)


def get_auditor(
    db: Database = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
) -> ConsistencyAuditor:
    return ConsistencyAuditor(db, storage)


def get_device_registry(
    db: Database = Depends(get_db),
    tokens: TokenService = Depends(get_tokens),
) -> DeviceRegistry:
    return DeviceRegistry(db, tokens)


def client_ip(request: Request) -> str:
    """Best-effort source address of a request, honoring proxy headers."""
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def public_base_url(request: Request) -> str:
    """Base URL used to build share and blob links."""
    settings = get_settings(request)
    if settings.public_url:
        return settings.public_url
    return str(request.base_url).rstrip("/")


def enforce_request_rate(
    request: Request,
    quota: QuotaEvaluator = Depends(get_quota),
) -> None:
    """Count the request against the per-IP hourly ceiling."""
    decision = quota.check_request_rate(client_ip(request))
    if not decision.allowed:
        raise RateLimitError(decision.reason or "Too many requests")


def get_current_device(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    tokens: TokenService = Depends(get_tokens),
) -> DeviceIdentity:
    """Validate bearer token and return the caller's identity."""
    if credentials is None:
        raise AuthError("Missing authentication credentials")
    return tokens.verify(credentials.credentials)
