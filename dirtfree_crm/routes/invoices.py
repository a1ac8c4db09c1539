"""
Invoice Routes for Customer Billing
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..audit import record_audit
from ..auth import CurrentUser, require_roles
from ..database import get_db
from ..models import OFFICE_ROLES, Customer, Job
from ..models_invoice import Invoice
from ..responses import ok
from ..schemas import InvoiceCreate, InvoiceResponse
from ..services.invoice_service import (
    generate_invoice_number,
    mark_invoice_paid,
    send_receipt_best_effort,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/invoices", tags=["Invoices"])

INVOICE_STATUSES = ("pending", "sent", "paid", "void")


def _get_invoice_or_404(db: Session, invoice_id: int) -> Invoice:
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id).first()
    if not invoice:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


@router.get("")
async def list_invoices(
    status: Optional[str] = Query(None),
    customer_id: Optional[int] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    if status and status not in INVOICE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown invoice status: {status}")

    query = db.query(Invoice)
    if status:
        query = query.filter(Invoice.status == status)
    if customer_id:
        query = query.filter(Invoice.customer_id == customer_id)

    invoices = query.order_by(Invoice.id.desc()).offset(skip).limit(limit).all()
    return ok([InvoiceResponse.model_validate(i) for i in invoices])


@router.get("/{invoice_id}")
async def get_invoice(
    invoice_id: int,
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    return ok(InvoiceResponse.model_validate(_get_invoice_or_404(db, invoice_id)))


@router.post("", status_code=201)
async def create_invoice(
    data: InvoiceCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    """Create a new invoice"""
    if not db.query(Customer).filter(Customer.id == data.customer_id).first():
        raise HTTPException(status_code=400, detail="Customer does not exist")

    if data.job_id is not None:
        job = db.query(Job).filter(Job.id == data.job_id).first()
        if not job or job.customer_id != data.customer_id:
            raise HTTPException(status_code=400, detail="Job does not belong to this customer")

    invoice = Invoice(
        customer_id=data.customer_id,
        job_id=data.job_id,
        invoice_number=generate_invoice_number(db),
        description=data.description,
        total_amount=round(data.total_amount, 2),
        currency=data.currency.upper(),
        status="pending",
        due_date=datetime.utcnow() + timedelta(days=data.due_days),
    )
    db.add(invoice)
    db.commit()
    db.refresh(invoice)

    logger.info(f"🧾 Invoice {invoice.invoice_number} created")
    record_audit(
        db,
        action="create",
        resource_type="invoice",
        resource_id=invoice.id,
        user_id=current_user.user_id,
        details={"invoice_number": invoice.invoice_number, "total_amount": invoice.total_amount},
        request=request,
    )
    return ok(InvoiceResponse.model_validate(invoice))


@router.post("/{invoice_id}/mark-paid")
async def mark_invoice_as_paid(
    invoice_id: int,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    """Mark an invoice paid for offline payments (cash, check)"""
    invoice = _get_invoice_or_404(db, invoice_id)
    if invoice.status == "void":
        raise HTTPException(status_code=400, detail="Cannot mark a void invoice as paid")

    if mark_invoice_paid(db, invoice):
        record_audit(
            db,
            action="payment_received",
            resource_type="invoice",
            resource_id=invoice.id,
            user_id=current_user.user_id,
            details={"method": "manual"},
            request=request,
        )
        await send_receipt_best_effort(invoice)

    return ok(InvoiceResponse.model_validate(invoice))
