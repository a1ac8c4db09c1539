"""
Job scheduling routes
Technicians only ever see and update jobs assigned to them
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import false
from sqlalchemy.orm import Query as SAQuery
from sqlalchemy.orm import Session

from ..audit import record_audit
from ..auth import CurrentUser, get_current_user, require_roles
from ..database import get_db
from ..models import JOB_STATUSES, OFFICE_ROLES, Customer, Job, Technician
from ..responses import ok
from ..schemas import JobCreate, JobResponse, JobStatusUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])


def scoped_jobs(db: Session, current_user: CurrentUser) -> SAQuery:
    """Jobs visible to the caller"""
    query = db.query(Job)
    if current_user.is_technician:
        if current_user.technician_id is None:
            # A technician account without a technician row sees nothing
            return query.filter(false())
        query = query.filter(Job.technician_id == current_user.technician_id)
    return query


def _get_job_or_404(db: Session, current_user: CurrentUser, job_id: int) -> Job:
    job = scoped_jobs(db, current_user).filter(Job.id == job_id).first()
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("")
async def list_jobs(
    status: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if status and status not in JOB_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown job status: {status}")

    query = scoped_jobs(db, current_user)
    if status:
        query = query.filter(Job.status == status)
    if date_from:
        query = query.filter(Job.scheduled_date >= date_from)
    if date_to:
        query = query.filter(Job.scheduled_date <= date_to)

    jobs = query.order_by(Job.scheduled_date.asc()).offset(skip).limit(limit).all()
    return ok([JobResponse.model_validate(j) for j in jobs])


@router.get("/{job_id}")
async def get_job(
    job_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(JobResponse.model_validate(_get_job_or_404(db, current_user, job_id)))


@router.post("", status_code=201)
async def create_job(
    data: JobCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    if not db.query(Customer).filter(Customer.id == data.customer_id).first():
        raise HTTPException(status_code=400, detail="Customer does not exist")
    if data.technician_id is not None and not (
        db.query(Technician).filter(Technician.id == data.technician_id).first()
    ):
        raise HTTPException(status_code=400, detail="Technician does not exist")

    job = Job(**data.model_dump())
    db.add(job)
    db.commit()
    db.refresh(job)

    logger.info(f"✅ Job {job.id} scheduled for {job.scheduled_date.isoformat()}")
    record_audit(
        db,
        action="create",
        resource_type="job",
        resource_id=job.id,
        user_id=current_user.user_id,
        request=request,
    )
    return ok(JobResponse.model_validate(job))


@router.patch("/{job_id}/status")
async def update_job_status(
    job_id: int,
    data: JobStatusUpdate,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Move a job to a new status, stamping completion and cancellation times"""
    job = _get_job_or_404(db, current_user, job_id)
    previous_status = job.status

    job.status = data.status
    now = datetime.utcnow()
    if data.status == "completed" and not job.completed_at:
        job.completed_at = now
    elif data.status == "cancelled" and not job.cancelled_at:
        job.cancelled_at = now

    db.commit()
    db.refresh(job)

    logger.info(f"📋 Job {job.id} status {previous_status} -> {job.status}")
    record_audit(
        db,
        action="status_change",
        resource_type="job",
        resource_id=job.id,
        user_id=current_user.user_id,
        details={"from": previous_status, "to": job.status},
        request=request,
    )
    return ok(JobResponse.model_validate(job))
