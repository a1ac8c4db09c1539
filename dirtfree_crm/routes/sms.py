"""
Outbound SMS and message log routes for office staff
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..audit import record_audit
from ..auth import CurrentUser, require_roles
from ..database import get_db
from ..models import OFFICE_ROLES
from ..models_twilio import SmsMessage, SmsOptOut
from ..responses import ok
from ..schemas import SmsMessageResponse, SmsOptOutResponse, SmsSendRequest
from ..services.twilio_service import OPTED_OUT_ERROR, send_sms
from ..shared.validators import mask_phone, normalize_phone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sms", tags=["SMS"])


@router.post("/send")
async def send_sms_message(
    data: SmsSendRequest,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    """Send a one-off SMS; opted-out recipients are refused"""
    try:
        to_phone = normalize_phone(data.to)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    result = await send_sms(
        db=db,
        to_phone=to_phone,
        message_body=data.body,
        message_type="manual",
        customer_id=data.customer_id,
        job_id=data.job_id,
    )

    if not result.success:
        if result.error == OPTED_OUT_ERROR:
            raise HTTPException(
                status_code=400, detail="Recipient has opted out of SMS messages"
            )
        logger.error(f"❌ Manual SMS to {mask_phone(to_phone)} failed: {result.error}")
        raise HTTPException(status_code=502, detail=f"Failed to send SMS: {result.error}")

    record_audit(
        db,
        action="sms_sent",
        resource_type="sms_message",
        resource_id=result.message.sid,
        user_id=current_user.user_id,
        details={"to": mask_phone(to_phone)},
        request=request,
    )
    return ok(SmsMessageResponse.model_validate(result.message))


@router.get("/logs")
async def list_sms_logs(
    phone: Optional[str] = Query(None),
    message_sid: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    """Recent SMS messages, optionally filtered by phone number or message sid"""
    query = db.query(SmsMessage)

    if message_sid:
        query = query.filter(SmsMessage.sid == message_sid)
    if phone:
        try:
            phone = normalize_phone(phone)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        query = query.filter(or_(SmsMessage.to_number == phone, SmsMessage.from_number == phone))

    messages = query.order_by(SmsMessage.created_at.desc(), SmsMessage.id.desc()).limit(limit).all()
    return ok([SmsMessageResponse.model_validate(m) for m in messages])


@router.get("/opt-outs")
async def list_opt_outs(
    limit: int = Query(100, ge=1, le=500),
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    """Numbers currently opted out of SMS"""
    records = (
        db.query(SmsOptOut)
        .filter(SmsOptOut.is_active.is_(True))
        .order_by(SmsOptOut.opted_out_at.desc())
        .limit(limit)
        .all()
    )
    return ok([SmsOptOutResponse.model_validate(r) for r in records])
