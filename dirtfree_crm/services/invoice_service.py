"""
Invoice helpers shared by the invoice routes and the payment webhooks
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..email_service import send_payment_receipt_email
from ..models_invoice import Invoice

logger = logging.getLogger(__name__)


def generate_invoice_number(db: Session) -> str:
    """Generate unique invoice number: INV-<year>-<sequence>"""
    year = datetime.utcnow().year
    count = db.query(Invoice).filter(Invoice.invoice_number.like(f"INV-{year}-%")).count() + 1
    number = f"INV-{year}-{count:05d}"
    # Skip over numbers taken by manual entry or deleted rows
    while db.query(Invoice).filter(Invoice.invoice_number == number).first():
        count += 1
        number = f"INV-{year}-{count:05d}"
    return number


def mark_invoice_paid(
    db: Session, invoice: Invoice, payment_intent_id: Optional[str] = None
) -> bool:
    """
    Mark an invoice paid.

    Returns:
        False when it was already paid (nothing changed)
    """
    if invoice.status == "paid":
        logger.info(f"Invoice {invoice.invoice_number} already marked as paid")
        return False

    invoice.status = "paid"
    invoice.paid_at = datetime.utcnow()
    if payment_intent_id:
        invoice.stripe_payment_intent_id = payment_intent_id
    db.commit()
    db.refresh(invoice)
    logger.info(f"💰 Invoice {invoice.invoice_number} marked as paid")
    return True


async def send_receipt_best_effort(invoice: Invoice) -> None:
    """Email a payment receipt when the customer accepts email; failures are only logged"""
    customer = invoice.customer
    if not customer or not customer.email or not customer.email_notifications:
        return
    try:
        await send_payment_receipt_email(
            customer_email=customer.email,
            customer_name=customer.name,
            invoice_number=invoice.invoice_number,
            amount=invoice.total_amount,
            currency=invoice.currency or "USD",
        )
    except Exception as e:
        logger.warning(f"Failed to send payment receipt for {invoice.invoice_number}: {e}")
