"""
Twilio SMS Service
Sends outbound SMS through the Twilio REST API and logs every message
"""

import logging
import uuid
from datetime import datetime
from typing import NamedTuple, Optional

import httpx
from sqlalchemy.orm import Session

from ..config import (
    COMPANY_NAME,
    COMPANY_PHONE,
    TWILIO_ACCOUNT_SID,
    TWILIO_AUTH_TOKEN,
    TWILIO_MESSAGING_SERVICE_SID,
    TWILIO_PHONE_NUMBER,
    TWILIO_WEBHOOK_BASE_URL,
)
from ..models import Customer
from ..models_twilio import SmsMessage
from ..shared.validators import mask_phone, normalize_phone
from .opt_out import is_opted_out

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

OPTED_OUT_ERROR = "Recipient has opted out of SMS"


class SmsResult(NamedTuple):
    success: bool
    error: Optional[str] = None
    message: Optional[SmsMessage] = None


class TwilioAPIError(Exception):
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


def sms_blocked(db: Session, phone: str, customer_id: Optional[int] = None) -> bool:
    """True when the number is opted out or its customer has SMS turned off"""
    if is_opted_out(db, phone):
        return True

    query = db.query(Customer).filter(Customer.sms_notifications.is_(False))
    if customer_id is not None:
        query = query.filter((Customer.id == customer_id) | (Customer.phone_e164 == phone))
    else:
        query = query.filter(Customer.phone_e164 == phone)
    return query.first() is not None


def status_callback_url() -> Optional[str]:
    if not TWILIO_WEBHOOK_BASE_URL:
        return None
    return TWILIO_WEBHOOK_BASE_URL.rstrip("/") + "/api/twilio/status"


async def _deliver(to_phone: str, body: str) -> dict:
    """
    POST the message to Twilio.

    Returns:
        Twilio's message resource as a dict

    Raises:
        TwilioAPIError: When Twilio rejects the request
        httpx.HTTPError: On network failure
    """
    data = {"To": to_phone, "Body": body}
    if TWILIO_MESSAGING_SERVICE_SID:
        data["MessagingServiceSid"] = TWILIO_MESSAGING_SERVICE_SID
    else:
        data["From"] = TWILIO_PHONE_NUMBER

    callback = status_callback_url()
    if callback:
        data["StatusCallback"] = callback

    async with httpx.AsyncClient() as client:
        response = await client.post(
            f"{TWILIO_API_BASE}/Accounts/{TWILIO_ACCOUNT_SID}/Messages.json",
            auth=(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN),
            data=data,
            timeout=10.0,
        )

    logger.info(f"📡 Twilio API response status: {response.status_code}")

    if response.status_code in (200, 201):
        return response.json()

    try:
        error_data = response.json()
    except ValueError:
        error_data = {}
    code = error_data.get("code")
    raise TwilioAPIError(
        error_data.get("message", f"Twilio API error {response.status_code}"),
        code=str(code) if code is not None else None,
    )


async def send_sms(
    db: Session,
    to_phone: str,
    message_body: str,
    message_type: str = "manual",
    customer_id: Optional[int] = None,
    job_id: Optional[int] = None,
) -> SmsResult:
    """
    Send SMS via Twilio

    Opted-out numbers (and customers with SMS turned off) are refused before
    any provider call and nothing is logged for them.

    Args:
        db: Database session
        to_phone: Recipient phone number, normalized to E.164 here
        message_body: SMS message content
        message_type: manual, reminder, ...
        customer_id: Optional customer the message is about
        job_id: Optional job the message is about

    Returns:
        SmsResult(success, error, message)
    """
    try:
        to_phone = normalize_phone(to_phone)
    except ValueError as e:
        return SmsResult(False, str(e))

    if sms_blocked(db, to_phone, customer_id):
        logger.info(f"🔕 SMS to {mask_phone(to_phone)} refused: recipient opted out")
        return SmsResult(False, OPTED_OUT_ERROR)

    if not TWILIO_ACCOUNT_SID or not TWILIO_AUTH_TOKEN:
        logger.error("❌ Twilio credentials not configured")
        return SmsResult(False, "Twilio not configured")

    if not TWILIO_MESSAGING_SERVICE_SID and not TWILIO_PHONE_NUMBER:
        logger.error("❌ Neither TWILIO_MESSAGING_SERVICE_SID nor TWILIO_PHONE_NUMBER is set")
        return SmsResult(False, "Twilio sender not configured")

    logger.info(f"🚀 Sending {message_type} SMS to {mask_phone(to_phone)}")

    from_number = TWILIO_PHONE_NUMBER or TWILIO_MESSAGING_SERVICE_SID
    try:
        result = await _deliver(to_phone, message_body)
    except (TwilioAPIError, httpx.HTTPError) as e:
        error_code = getattr(e, "code", None)
        logger.error(f"❌ Twilio API error [{error_code}]: {str(e)}")
        sms_log = SmsMessage(
            sid=f"local-{uuid.uuid4().hex}",
            direction="outbound",
            to_number=to_phone,
            from_number=from_number,
            body=message_body,
            message_type=message_type,
            status="failed",
            error_code=error_code,
            error_message=str(e),
            customer_id=customer_id,
            job_id=job_id,
        )
        db.add(sms_log)
        db.commit()
        return SmsResult(False, str(e), sms_log)

    sms_log = SmsMessage(
        sid=result.get("sid") or f"local-{uuid.uuid4().hex}",
        direction="outbound",
        to_number=to_phone,
        from_number=result.get("from") or from_number,
        body=message_body,
        message_type=message_type,
        status=result.get("status") or "queued",
        customer_id=customer_id,
        job_id=job_id,
    )
    db.add(sms_log)
    db.commit()
    db.refresh(sms_log)

    logger.info(f"✅ SMS sent: {message_type} to {mask_phone(to_phone)} (SID: {sms_log.sid})")
    return SmsResult(True, None, sms_log)


def build_reminder_message(customer_name: str, scheduled_date: datetime) -> str:
    first_name = (customer_name or "").split(" ")[0] or "there"
    when = scheduled_date.strftime("%A, %B %d at %I:%M %p").replace(" 0", " ")
    return (
        f"Hi {first_name}! Reminder: your {COMPANY_NAME} appointment is {when}. "
        f"Questions? Call {COMPANY_PHONE}. Reply STOP to opt out."
    )


async def send_job_reminder_sms(db: Session, job) -> SmsResult:
    """Send the day-ahead reminder for a job"""
    customer = job.customer
    return await send_sms(
        db=db,
        to_phone=customer.phone_e164,
        message_body=build_reminder_message(customer.name, job.scheduled_date),
        message_type="reminder",
        customer_id=customer.id,
        job_id=job.id,
    )
