from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from repohub.core.errors import AuthDenied, SyncAlreadyRunning, UnknownScopeError
from repohub.sync.engine import SyncEngine
from repohub.sync.models import (
    AutoSyncReport,
    AutoSyncStatus,
    PackageInfo,
    PackageUpdate,
    PlatformInfo,
    PlatformUpdate,
    SyncJobState,
)
from repohub.sync.scopes import get_scope
from repohub.web.security import presented_secret

router = APIRouter(prefix="/api")
logger = logging.getLogger("api")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


def _forbidden(reason: Optional[str], error: str = "Sync operation not allowed") -> HTTPException:
    return HTTPException(status_code=403, detail={"error": error, "reason": reason or "Unauthorized"})


def _require_write(engine: SyncEngine, secret: Optional[str]) -> None:
    decision = engine.auth.is_write_allowed(secret)
    if not decision.allowed:
        logger.warning("write_denied reason=%s", decision.reason)
        raise _forbidden(decision.reason, error="Write operation not allowed")


@router.get("/healthz")
def healthz():
    return {"ok": True, "status": "alive", "checked_at": _now_iso()}


@router.get("/sync", response_model=dict[str, SyncJobState])
def sync_statuses(engine: SyncEngine = Depends(get_engine)):
    return engine.orchestrator.statuses()


@router.get("/sync/{scope}", response_model=SyncJobState)
def sync_status(scope: str, engine: SyncEngine = Depends(get_engine)):
    try:
        return engine.orchestrator.get_status(scope)
    except UnknownScopeError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/sync/{scope}")
def trigger_sync(
    scope: str,
    engine: SyncEngine = Depends(get_engine),
    secret: Optional[str] = Depends(presented_secret),
):
    try:
        snapshot = engine.orchestrator.trigger_sync(scope, secret)
    except UnknownScopeError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AuthDenied as e:
        raise _forbidden(e.reason)
    except SyncAlreadyRunning:
        raise HTTPException(status_code=409, detail={"error": "Sync already in progress"})
    return {"message": f"{get_scope(scope).label} package sync started", "status": snapshot}


@router.get("/auto-sync", response_model=AutoSyncStatus)
def auto_sync_status(engine: SyncEngine = Depends(get_engine)):
    return engine.scheduler.status()


@router.post("/auto-sync", response_model=AutoSyncReport)
def auto_sync(
    engine: SyncEngine = Depends(get_engine),
    secret: Optional[str] = Depends(presented_secret),
):
    try:
        return engine.scheduler.maybe_run_all(secret)
    except AuthDenied as e:
        raise _forbidden(e.reason)
    except SyncAlreadyRunning:
        raise HTTPException(status_code=409, detail={"error": "Auto sync already in progress"})


@router.post("/init-platforms")
def init_platforms(
    engine: SyncEngine = Depends(get_engine),
    secret: Optional[str] = Depends(presented_secret),
):
    _require_write(engine, secret)
    inserted = engine.init_platforms()
    return {"success": True, "message": "Platforms initialized successfully", "inserted": inserted}


@router.get("/platforms", response_model=list[PlatformInfo])
def list_platforms(engine: SyncEngine = Depends(get_engine)):
    return engine.store.list_platforms()


@router.post("/platforms", response_model=PlatformInfo, status_code=201)
def create_platform(
    payload: PlatformInfo,
    engine: SyncEngine = Depends(get_engine),
    secret: Optional[str] = Depends(presented_secret),
):
    _require_write(engine, secret)
    created = engine.store.create_platform(payload)
    if created is None:
        raise HTTPException(status_code=409, detail={"error": "Platform already exists"})
    return created


@router.get("/platforms/{platform_id}", response_model=PlatformInfo)
def get_platform(platform_id: str, engine: SyncEngine = Depends(get_engine)):
    platform = engine.store.get_platform(platform_id)
    if platform is None:
        raise HTTPException(status_code=404, detail={"error": "Platform not found"})
    return platform


@router.put("/platforms/{platform_id}", response_model=PlatformInfo)
def update_platform(
    platform_id: str,
    payload: PlatformUpdate,
    engine: SyncEngine = Depends(get_engine),
    secret: Optional[str] = Depends(presented_secret),
):
    _require_write(engine, secret)
    platform = engine.store.update_platform(platform_id, payload.model_dump(exclude_none=True))
    if platform is None:
        raise HTTPException(status_code=404, detail={"error": "Platform not found"})
    return platform


@router.delete("/platforms/{platform_id}")
def delete_platform(
    platform_id: str,
    engine: SyncEngine = Depends(get_engine),
    secret: Optional[str] = Depends(presented_secret),
):
    _require_write(engine, secret)
    if not engine.store.delete_platform(platform_id):
        raise HTTPException(status_code=404, detail={"error": "Platform not found"})
    return {"success": True}


@router.get("/packages/{package_id}", response_model=PackageInfo)
def get_package(package_id: int, engine: SyncEngine = Depends(get_engine)):
    package = engine.store.get_package(package_id)
    if package is None:
        raise HTTPException(status_code=404, detail={"error": "Package not found"})
    return package


@router.put("/packages/{package_id}", response_model=PackageInfo)
def update_package(
    package_id: int,
    payload: PackageUpdate,
    engine: SyncEngine = Depends(get_engine),
    secret: Optional[str] = Depends(presented_secret),
):
    _require_write(engine, secret)
    package = engine.store.update_package(package_id, payload.model_dump(exclude_none=True))
    if package is None:
        raise HTTPException(status_code=404, detail={"error": "Package not found"})
    return package


@router.delete("/packages/{package_id}")
def delete_package(
    package_id: int,
    engine: SyncEngine = Depends(get_engine),
    secret: Optional[str] = Depends(presented_secret),
):
    _require_write(engine, secret)
    if not engine.store.delete_package(package_id):
        raise HTTPException(status_code=404, detail={"error": "Package not found"})
    return {"success": True}


@router.get("/history")
def get_history(limit: int = 50, scope: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
    limit_sanitized = min(max(int(limit), 1), 500)
    items = engine.store.recent_runs(limit=limit_sanitized, scope=scope)
    return {"limit": limit_sanitized, "count": len(items), "items": items}
