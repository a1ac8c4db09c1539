"""
SMS opt-out handling
Carrier keywords (STOP/START/HELP) and the per-number suppression list
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..config import COMPANY_NAME, COMPANY_PHONE
from ..models import Customer
from ..models_twilio import SmsOptOut
from ..shared.validators import mask_phone, normalize_phone

logger = logging.getLogger(__name__)

KEYWORD_OPT_OUT = "opt_out"
KEYWORD_OPT_IN = "opt_in"
KEYWORD_HELP = "help"

KEYWORDS = {
    KEYWORD_OPT_OUT: ("STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"),
    KEYWORD_OPT_IN: ("START", "YES", "UNSTOP"),
    KEYWORD_HELP: ("HELP", "INFO"),
}

KEYWORD_REPLIES = {
    KEYWORD_OPT_OUT: (
        f"You have been unsubscribed from {COMPANY_NAME} messages and will not receive "
        f"any more texts. Reply START to resubscribe."
    ),
    KEYWORD_OPT_IN: (
        f"You are resubscribed to {COMPANY_NAME} appointment messages. "
        f"Reply STOP to unsubscribe, HELP for help."
    ),
    KEYWORD_HELP: (
        f"{COMPANY_NAME}: appointment reminders and updates. Call {COMPANY_PHONE} for help. "
        f"Msg&data rates may apply. Reply STOP to unsubscribe."
    ),
}


def match_keyword(body: Optional[str]) -> Optional[str]:
    """
    Classify an inbound message as opt_out, opt_in, help or None.

    The body matches a keyword when, trimmed and upper-cased, it equals the
    keyword or starts with the keyword followed by a space.
    """
    if not body:
        return None
    message = body.strip().upper()
    for action, keywords in KEYWORDS.items():
        for keyword in keywords:
            if message == keyword or message.startswith(keyword + " "):
                return action
    return None


def _canonical(phone: str) -> str:
    try:
        return normalize_phone(phone)
    except ValueError:
        return phone


def is_opted_out(db: Session, phone: str) -> bool:
    """True when the number has an active opt-out"""
    phone = _canonical(phone)
    return (
        db.query(SmsOptOut)
        .filter(SmsOptOut.phone_number == phone, SmsOptOut.is_active.is_(True))
        .first()
        is not None
    )


def _set_customer_sms(db: Session, phone: str, enabled: bool) -> Optional[int]:
    customers = db.query(Customer).filter(Customer.phone_e164 == phone).all()
    for customer in customers:
        customer.sms_notifications = enabled
    return customers[0].id if customers else None


def _finish(db: Session, record: Optional[SmsOptOut], commit: bool) -> None:
    """commit=False only flushes, leaving the caller to commit with its own changes"""
    if commit:
        db.commit()
        if record:
            db.refresh(record)
    else:
        db.flush()


def opt_out(
    db: Session, phone: str, reason: str = "STOP keyword", commit: bool = True
) -> SmsOptOut:
    """Record an active opt-out for the number and turn off SMS for its customers"""
    phone = _canonical(phone)
    now = datetime.utcnow()

    customer_id = _set_customer_sms(db, phone, False)

    record = db.query(SmsOptOut).filter(SmsOptOut.phone_number == phone).first()
    if record:
        record.is_active = True
        record.reason = reason
        record.opted_out_at = now
        record.opted_in_at = None
        if customer_id and not record.customer_id:
            record.customer_id = customer_id
    else:
        record = SmsOptOut(
            phone_number=phone,
            customer_id=customer_id,
            is_active=True,
            reason=reason,
            opted_out_at=now,
        )
        db.add(record)

    _finish(db, record, commit)
    logger.info(f"🔕 SMS opt-out recorded for {mask_phone(phone)}")
    return record


def opt_in(db: Session, phone: str, commit: bool = True) -> Optional[SmsOptOut]:
    """Deactivate any opt-out for the number and turn SMS back on for its customers"""
    phone = _canonical(phone)

    _set_customer_sms(db, phone, True)

    record = db.query(SmsOptOut).filter(SmsOptOut.phone_number == phone).first()
    if record:
        record.is_active = False
        record.opted_in_at = datetime.utcnow()

    _finish(db, record, commit)
    logger.info(f"🔔 SMS opt-in recorded for {mask_phone(phone)}")
    return record
