import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import CurrentUser, require_roles
from ..cache import get_or_compute
from ..database import get_db
from ..models import OFFICE_ROLES, Customer, Job
from ..models_invoice import Invoice
from ..models_twilio import SmsOptOut
from ..responses import ok

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dashboard", tags=["Dashboard"])


def build_summary(db: Session) -> dict:
    today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    tomorrow = today + timedelta(days=1)
    return {
        "customers": db.query(Customer).count(),
        "jobs_today": db.query(Job)
        .filter(Job.scheduled_date >= today, Job.scheduled_date < tomorrow)
        .filter(Job.status != "cancelled")
        .count(),
        "pending_invoices": db.query(Invoice).filter(Invoice.status.in_(("pending", "sent"))).count(),
        "active_opt_outs": db.query(SmsOptOut).filter(SmsOptOut.is_active.is_(True)).count(),
        "generated_at": datetime.utcnow().isoformat(),
    }


@router.get("/summary")
async def dashboard_summary(
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    """Headline counts, cached for 30 seconds"""

    async def compute():
        logger.debug("📊 Computing dashboard summary")
        return build_summary(db)

    return ok(await get_or_compute("dashboard:summary", compute))
