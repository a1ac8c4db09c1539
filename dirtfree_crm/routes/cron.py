"""
Scheduled job triggers
Called by an external scheduler with the shared CRON_SECRET bearer token
"""

import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session, joinedload

from ..config import CRON_SECRET
from ..database import get_db
from ..models import CronJobLog, Job
from ..responses import ok
from ..schemas import CronRunResponse
from ..services.twilio_service import send_job_reminder_sms, sms_blocked
from ..shared.validators import normalize_phone
from ..webhook_security import constant_time_compare

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["Cron"])

REMINDER_JOB_NAME = "send-reminders"
REMINDER_WINDOW_START = timedelta(hours=24)
REMINDER_WINDOW_END = timedelta(hours=48)
REMINDABLE_STATUSES = ("scheduled", "confirmed")


async def verify_cron_secret(request: Request) -> None:
    """Require Authorization: Bearer <CRON_SECRET>; an unset secret rejects everything"""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if not CRON_SECRET:
        logger.error("❌ CRON_SECRET not configured, rejecting cron trigger")
        raise HTTPException(status_code=401, detail="Cron trigger not configured")
    if scheme.lower() != "bearer" or not constant_time_compare(token.strip(), CRON_SECRET):
        logger.warning("🚫 Cron trigger with invalid secret")
        raise HTTPException(status_code=401, detail="Invalid cron secret")


def due_reminder_jobs(db: Session, now: datetime) -> list[Job]:
    return (
        db.query(Job)
        .options(joinedload(Job.customer))
        .filter(
            Job.status.in_(REMINDABLE_STATUSES),
            Job.reminder_sent_at.is_(None),
            Job.scheduled_date >= now + REMINDER_WINDOW_START,
            Job.scheduled_date <= now + REMINDER_WINDOW_END,
        )
        .order_by(Job.scheduled_date.asc())
        .all()
    )


@router.post("/send-reminders")
async def send_reminders(
    _: None = Depends(verify_cron_secret),
    db: Session = Depends(get_db),
):
    """Send day-ahead reminder SMS for jobs 24-48 hours out; safe to re-run"""
    now = datetime.utcnow()
    run = CronJobLog(job_name=REMINDER_JOB_NAME, status="running", started_at=now)
    db.add(run)
    db.commit()

    sent, skipped, failed = 0, 0, 0
    sent_job_ids = []

    try:
        for job in due_reminder_jobs(db, now):
            customer = job.customer
            try:
                phone = normalize_phone(customer.phone_e164) if customer else None
            except ValueError:
                phone = None

            if not phone or sms_blocked(db, phone, customer.id):
                skipped += 1
                continue

            result = await send_job_reminder_sms(db, job)
            if result.success:
                job.reminder_sent_at = datetime.utcnow()
                db.commit()
                sent += 1
                sent_job_ids.append(job.id)
            else:
                failed += 1
                logger.warning(f"⚠️ Reminder for job {job.id} failed: {result.error}")

        run.status = "success"
    except Exception as e:
        db.rollback()
        run.status = "failed"
        run.error_message = str(e)[:2000]
        logger.error(f"❌ Reminder run failed: {e}")
    finally:
        run.processed_count = sent
        run.skipped_count = skipped
        run.failed_count = failed
        run.finished_at = datetime.utcnow()
        db.commit()

    if run.status == "failed":
        raise HTTPException(status_code=500, detail="Reminder run failed")

    logger.info(f"⏰ Reminders: sent={sent} skipped={skipped} failed={failed}")
    return ok(
        CronRunResponse(
            job_name=REMINDER_JOB_NAME,
            status=run.status,
            processed_count=sent,
            skipped_count=skipped,
            failed_count=failed,
            job_ids=sent_job_ids,
        )
    )
