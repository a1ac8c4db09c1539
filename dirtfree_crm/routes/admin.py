import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import CurrentUser, require_roles
from ..cache import get_cache_stats
from ..database import get_db
from ..models import ROLE_ADMIN, AuditLog, CronJobLog
from ..responses import ok
from ..schemas import AuditLogResponse
from ..slo import evaluate_slos

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])

require_admin = require_roles(ROLE_ADMIN)


@router.get("/cache/stats")
async def cache_stats(current_user: CurrentUser = Depends(require_admin)):
    return ok(get_cache_stats())


@router.get("/slo")
async def slo_report(
    days: int = Query(7, ge=1, le=7),
    current_user: CurrentUser = Depends(require_admin),
):
    """SLO attainment over the last `days` days"""
    try:
        return ok(evaluate_slos(days))
    except Exception as e:
        logger.error(f"❌ Failed to evaluate SLOs: {e}")
        raise HTTPException(status_code=503, detail="SLO counters unavailable") from e


@router.get("/audit-logs")
async def list_audit_logs(
    action: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    current_user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    query = db.query(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    if resource_type:
        query = query.filter(AuditLog.resource_type == resource_type)
    entries = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    return ok([AuditLogResponse.model_validate(e) for e in entries])


@router.get("/cron-runs")
async def list_cron_runs(
    job_name: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Recent scheduled job runs with their counters"""
    query = db.query(CronJobLog)
    if job_name:
        query = query.filter(CronJobLog.job_name == job_name)
    runs = query.order_by(CronJobLog.started_at.desc(), CronJobLog.id.desc()).limit(limit).all()
    return ok(
        [
            {
                "id": r.id,
                "job_name": r.job_name,
                "status": r.status,
                "started_at": r.started_at,
                "finished_at": r.finished_at,
                "processed_count": r.processed_count,
                "skipped_count": r.skipped_count,
                "failed_count": r.failed_count,
                "error_message": r.error_message,
            }
            for r in runs
        ]
    )
