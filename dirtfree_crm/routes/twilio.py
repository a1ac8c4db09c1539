"""
Twilio Webhook Routes
Inbound SMS (keyword handling) and outbound delivery status callbacks
"""

import logging
from typing import Optional
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import (
    SMS_INBOUND_RATE_LIMIT_PER_IP,
    SMS_INBOUND_RATE_LIMIT_PER_PHONE,
    SMS_RATE_LIMIT_WINDOW_SECONDS,
    TWILIO_AUTH_TOKEN,
)
from ..database import get_db
from ..models import Customer
from ..models_twilio import SmsMessage
from ..rate_limiter import enforce_rate_limit, get_client_ip
from ..services.opt_out import (
    KEYWORD_OPT_IN,
    KEYWORD_OPT_OUT,
    KEYWORD_REPLIES,
    match_keyword,
    opt_in,
    opt_out,
)
from ..shared.validators import mask_phone, normalize_phone
from ..slo import SLO_SMS_DELIVERY, SLO_SMS_INBOUND_VERIFY, record_slo_event
from ..webhook_security import verify_twilio_webhook

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/twilio", tags=["twilio"])

DELIVERY_FAILURE_STATUSES = {"undelivered", "failed"}
DELIVERED_STATUSES = {"delivered", "read"}
TERMINAL_STATUSES = {"delivered", "undelivered", "failed", "canceled"}

# Progression of an outbound message; callbacks never move a message backwards
# and a terminal status only gives way to `read`
STATUS_RANK = {
    "accepted": 0,
    "scheduled": 0,
    "queued": 0,
    "sending": 1,
    "sent": 2,
    "delivered": 3,
    "undelivered": 3,
    "failed": 3,
    "canceled": 3,
    "read": 4,
}


def twiml_response(message: Optional[str] = None) -> Response:
    """TwiML reply; no message means an empty <Response/>"""
    if message:
        body = f'<?xml version="1.0" encoding="UTF-8"?><Response><Message>{escape(message)}</Message></Response>'
    else:
        body = '<?xml version="1.0" encoding="UTF-8"?><Response/>'
    return Response(content=body, media_type="application/xml")


def _required(params: dict, name: str) -> str:
    value = (params.get(name) or "").strip()
    if not value:
        raise HTTPException(status_code=400, detail=f"Missing required field: {name}")
    return value


def _normalized(params: dict, name: str) -> str:
    try:
        return normalize_phone(_required(params, name))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid {name} phone number") from e


def _phone_or_raw(value: Optional[str]) -> str:
    """E.164 when the number parses, otherwise the value Twilio sent"""
    if not value:
        return ""
    try:
        return normalize_phone(value)
    except ValueError:
        return value


@router.post("/inbound")
async def inbound_sms(request: Request, db: Session = Depends(get_db)):
    """Handle an inbound SMS: verify, rate limit, log once, apply keywords"""
    try:
        _, params = await verify_twilio_webhook(request, TWILIO_AUTH_TOKEN)
    except HTTPException:
        record_slo_event(SLO_SMS_INBOUND_VERIFY, False)
        raise

    message_sid = _required(params, "MessageSid")
    from_phone = _normalized(params, "From")
    to_phone = _normalized(params, "To")
    body = params.get("Body") or ""

    enforce_rate_limit(
        request,
        "sms_inbound_ip",
        get_client_ip(request),
        SMS_INBOUND_RATE_LIMIT_PER_IP,
        SMS_RATE_LIMIT_WINDOW_SECONDS,
    )
    enforce_rate_limit(
        request,
        "sms_inbound_phone",
        from_phone,
        SMS_INBOUND_RATE_LIMIT_PER_PHONE,
        SMS_RATE_LIMIT_WINDOW_SECONDS,
    )

    existing = db.query(SmsMessage).filter(SmsMessage.sid == message_sid).first()
    if existing:
        logger.info(f"🔁 Duplicate inbound SMS {message_sid} from {mask_phone(from_phone)}, skipping")
        record_slo_event(SLO_SMS_INBOUND_VERIFY, True)
        return twiml_response()

    customer = db.query(Customer).filter(Customer.phone_e164 == from_phone).first()
    extra = None
    if params.get("NumMedia") and params.get("NumMedia") != "0":
        extra = {"num_media": params.get("NumMedia"), "media_url": params.get("MediaUrl0")}

    db.add(
        SmsMessage(
            sid=message_sid,
            direction="inbound",
            to_number=to_phone,
            from_number=from_phone,
            body=body,
            status="received",
            extra=extra,
            customer_id=customer.id if customer else None,
        )
    )
    action = match_keyword(body)

    try:
        db.flush()
    except IntegrityError:
        # Concurrent redelivery inserted the same sid first
        db.rollback()
        logger.info(f"🔁 Duplicate inbound SMS {message_sid} (concurrent), skipping")
        record_slo_event(SLO_SMS_INBOUND_VERIFY, True)
        return twiml_response()

    # The log row and the opt-out change commit together; if the keyword
    # update fails nothing is kept and Twilio's retry is processed in full
    try:
        if action == KEYWORD_OPT_OUT:
            opt_out(db, from_phone, reason="STOP keyword", commit=False)
        elif action == KEYWORD_OPT_IN:
            opt_in(db, from_phone, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        logger.error(f"❌ Failed to record inbound SMS {message_sid} from {mask_phone(from_phone)}")
        raise

    logger.info(
        f"📥 Inbound SMS {message_sid} from {mask_phone(from_phone)} keyword={action or 'none'}"
    )

    record_slo_event(SLO_SMS_INBOUND_VERIFY, True)
    return twiml_response(KEYWORD_REPLIES.get(action) if action else None)


@router.post("/status", status_code=204)
async def sms_status_callback(request: Request, db: Session = Depends(get_db)):
    """Record a delivery status callback for an outbound message"""
    _, params = await verify_twilio_webhook(request, TWILIO_AUTH_TOKEN)

    enforce_rate_limit(
        request,
        "sms_status_ip",
        get_client_ip(request),
        SMS_INBOUND_RATE_LIMIT_PER_IP,
        SMS_RATE_LIMIT_WINDOW_SECONDS,
    )

    message_sid = _required(params, "MessageSid")
    new_status = _required(params, "MessageStatus").lower()
    error_code = params.get("ErrorCode") or None
    error_message = params.get("ErrorMessage") or None

    message = db.query(SmsMessage).filter(SmsMessage.sid == message_sid).first()

    if message is None:
        message = SmsMessage(
            sid=message_sid,
            direction="outbound",
            to_number=_phone_or_raw(params.get("To")),
            from_number=_phone_or_raw(params.get("From")),
            body="",
            status=new_status,
            error_code=error_code,
            error_message=error_message,
        )
        db.add(message)
        previous_status = None
    else:
        previous_status = message.status
        current_rank = STATUS_RANK.get(previous_status, 0)
        new_rank = STATUS_RANK.get(new_status, 0)
        if new_rank < current_rank or (
            previous_status in TERMINAL_STATUSES and new_rank == current_rank
        ):
            logger.info(
                f"⏭️ Ignoring {new_status} callback for {message_sid}, already {previous_status}"
            )
            return Response(status_code=204)
        message.status = new_status
        if error_code:
            message.error_code = error_code
        if error_message:
            message.error_message = error_message

    try:
        db.commit()
    except IntegrityError:
        # Another callback created the row first; it will be updated by the next one
        db.rollback()
        logger.warning(f"⚠️ Concurrent status callback for {message_sid}")
        return Response(status_code=204)

    # Only the first outcome of a message counts toward the delivery SLO
    first_outcome = previous_status not in TERMINAL_STATUSES and previous_status != "read"
    if first_outcome and new_status != previous_status:
        if new_status in DELIVERED_STATUSES:
            record_slo_event(SLO_SMS_DELIVERY, True)
        elif new_status in DELIVERY_FAILURE_STATUSES:
            record_slo_event(SLO_SMS_DELIVERY, False)

    logger.info(
        f"📬 SMS {message_sid} status {previous_status or 'new'} -> {new_status}"
        + (f" (error {error_code})" if error_code else "")
    )
    return Response(status_code=204)
