"""Admin endpoints for operating the inbound pipeline."""

import hmac
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.models import PipelineAlert, Tenant
from app.services.alert_service import alert_warning
from app.services.dedup_service import get_dedup_stats
from app.services.queue_service import get_queue_stats, release_stale_processing

router = APIRouter(prefix="/admin", tags=["admin"])


class AlertTestRequest(BaseModel):
    message: str = "Test alert from Boka Inbox"


class VersionResponse(BaseModel):
    version: str
    git_commit: Optional[str] = None
    build_time: Optional[str] = None


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _tenant_id_for(db: Session, tenant_slug: Optional[str]):
    if not tenant_slug:
        return None
    tenant = db.query(Tenant).filter(Tenant.slug == tenant_slug).first()
    if not tenant:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return tenant.id


# === QUEUE ===


@router.get("/queue/stats")
async def queue_stats(
    tenant_slug: Optional[str] = None,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    return get_queue_stats(db, tenant_id=_tenant_id_for(db, tenant_slug))


@router.post("/queue/release-stale")
async def release_stale(
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    return {"released": release_stale_processing(db)}


# === DEDUP ===


@router.get("/dedup/stats")
async def dedup_stats(
    tenant_slug: Optional[str] = None,
    hours: int = 24,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    return get_dedup_stats(db, tenant_id=_tenant_id_for(db, tenant_slug), hours=max(hours, 1))


# === ALERTS ===


@router.get("/alerts")
async def recent_alerts(
    limit: int = 50,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    rows = db.query(PipelineAlert).order_by(PipelineAlert.created_at.desc()).limit(min(max(limit, 1), 500)).all()
    return [
        {
            "id": str(row.id),
            "tenant_id": str(row.tenant_id) if row.tenant_id else None,
            "kind": row.kind,
            "level": row.level,
            "message": row.message,
            "context": row.context,
            "created_at": row.created_at,
        }
        for row in rows
    ]


@router.post("/alerts/test")
def test_alert(
    payload: AlertTestRequest,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    return {"sent": alert_warning(payload.message, {"source": "admin"})}


@router.get("/version", response_model=VersionResponse)
async def get_version():
    """Return build metadata for diagnostics."""
    return VersionResponse(
        version=os.environ.get("APP_VERSION", "unknown"),
        git_commit=os.environ.get("GIT_COMMIT"),
        build_time=os.environ.get("BUILD_TIME"),
    )
