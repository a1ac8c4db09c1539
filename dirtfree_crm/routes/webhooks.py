"""
Payment and email provider webhooks
Each event is recorded by (provider, event id) so redeliveries are acknowledged without reprocessing
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..audit import record_audit
from ..config import RESEND_WEBHOOK_SECRET, STRIPE_WEBHOOK_SECRET
from ..database import get_db
from ..models import Customer, WebhookEvent
from ..models_invoice import Invoice
from ..responses import ok
from ..services.invoice_service import mark_invoice_paid, send_receipt_best_effort
from ..webhook_security import verify_stripe_webhook, verify_svix_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

STRIPE_PAYMENT_EVENTS = ("payment_intent.succeeded", "checkout.session.completed")
RESEND_SUPPRESSION_EVENTS = ("email.bounced", "email.complained")


def _parse_json(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return payload


def claim_event(db: Session, provider: str, event_id: str, event_type: Optional[str]) -> bool:
    """
    Record the event; False means it was already processed.
    """
    db.add(WebhookEvent(provider=provider, event_id=event_id, event_type=event_type))
    try:
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        return False


def release_event(db: Session, provider: str, event_id: str) -> None:
    """Forget a claimed event so the provider's retry is processed"""
    db.rollback()
    db.query(WebhookEvent).filter(
        WebhookEvent.provider == provider, WebhookEvent.event_id == event_id
    ).delete()
    db.commit()


def _find_invoice(db: Session, invoice_ref) -> Optional[Invoice]:
    """metadata.invoice_id may carry the numeric id or the public uuid"""
    if invoice_ref is None:
        return None
    ref = str(invoice_ref).strip()
    if ref.isdigit():
        return db.query(Invoice).filter(Invoice.id == int(ref)).first()
    return db.query(Invoice).filter(Invoice.public_id == ref).first()


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Mark invoices paid from Stripe payment events"""
    _, raw_body = await verify_stripe_webhook(request, STRIPE_WEBHOOK_SECRET)
    event = _parse_json(raw_body)

    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise HTTPException(status_code=400, detail="Missing event id or type")

    if event_type not in STRIPE_PAYMENT_EVENTS:
        logger.debug(f"Ignoring Stripe event type {event_type}")
        return ok({"received": True, "processed": False})

    if not claim_event(db, "stripe", event_id, event_type):
        logger.info(f"🔁 Duplicate Stripe event {event_id}, already processed")
        return ok({"received": True, "duplicate": True})

    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    if event_type == "checkout.session.completed":
        payment_intent_id = obj.get("payment_intent")
    else:
        payment_intent_id = obj.get("id")

    try:
        invoice = _find_invoice(db, metadata.get("invoice_id"))
        if not invoice:
            logger.warning(f"⚠️ Stripe event {event_id} references no known invoice")
            return ok({"received": True, "processed": False})

        newly_paid = mark_invoice_paid(db, invoice, payment_intent_id)
    except Exception as e:
        logger.error(f"❌ Failed to process Stripe event {event_id}: {e}")
        release_event(db, "stripe", event_id)
        raise HTTPException(status_code=500, detail="Failed to process webhook") from e

    if newly_paid:
        record_audit(
            db,
            action="payment_received",
            resource_type="invoice",
            resource_id=invoice.id,
            details={"stripe_event_id": event_id, "event_type": event_type},
            request=request,
        )
        await send_receipt_best_effort(invoice)

    return ok({"received": True, "processed": True, "invoice_id": invoice.id})


@router.post("/resend")
async def resend_webhook(request: Request, db: Session = Depends(get_db)):
    """Turn off email for customers whose address bounced or complained"""
    _, raw_body = await verify_svix_webhook(request, RESEND_WEBHOOK_SECRET)
    event = _parse_json(raw_body)

    event_id = request.headers.get("svix-id")
    event_type = event.get("type")

    if event_type not in RESEND_SUPPRESSION_EVENTS:
        return ok({"received": True, "processed": False})

    if not claim_event(db, "resend", event_id, event_type):
        logger.info(f"🔁 Duplicate Resend event {event_id}, already processed")
        return ok({"received": True, "duplicate": True})

    recipients = (event.get("data") or {}).get("to") or []
    if isinstance(recipients, str):
        recipients = [recipients]
    emails = [r.strip().lower() for r in recipients if isinstance(r, str) and r.strip()]

    updated = 0
    if emails:
        customers = db.query(Customer).filter(func.lower(Customer.email).in_(emails)).all()
        for customer in customers:
            if customer.email_notifications:
                customer.email_notifications = False
                updated += 1
        db.commit()

    logger.info(f"📭 Resend {event_type}: email disabled for {updated} customer(s)")
    return ok({"received": True, "processed": True, "customers_updated": updated})
