import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..audit import record_audit
from ..auth import CurrentUser, require_roles
from ..database import get_db
from ..models import OFFICE_ROLES, Customer
from ..responses import ok
from ..schemas import CustomerCreate, CustomerResponse, CustomerUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/customers", tags=["Customers"])


def _get_customer_or_404(db: Session, customer_id: int) -> Customer:
    customer = db.query(Customer).filter(Customer.id == customer_id).first()
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


@router.get("")
async def list_customers(
    search: Optional[str] = Query(None, max_length=100),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    """List customers, optionally searching name, email or phone"""
    query = db.query(Customer)
    if search:
        term = f"%{search.strip()}%"
        digits = "".join(ch for ch in search if ch.isdigit())
        conditions = [Customer.name.ilike(term), Customer.email.ilike(term)]
        if digits:
            conditions.append(Customer.phone_e164.like(f"%{digits}%"))
        query = query.filter(or_(*conditions))

    customers = query.order_by(Customer.name.asc()).offset(skip).limit(limit).all()
    return ok([CustomerResponse.model_validate(c) for c in customers])


@router.post("", status_code=201)
async def create_customer(
    data: CustomerCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    payload = data.model_dump()
    customer = Customer(phone_e164=payload.pop("phone"), **payload)
    db.add(customer)
    db.commit()
    db.refresh(customer)

    logger.info(f"✅ Customer {customer.id} created by {current_user.user_id}")
    record_audit(
        db,
        action="create",
        resource_type="customer",
        resource_id=customer.id,
        user_id=current_user.user_id,
        request=request,
    )
    return ok(CustomerResponse.model_validate(customer))


@router.get("/{customer_id}")
async def get_customer(
    customer_id: int,
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    return ok(CustomerResponse.model_validate(_get_customer_or_404(db, customer_id)))


@router.patch("/{customer_id}")
async def update_customer(
    customer_id: int,
    data: CustomerUpdate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES)),
    db: Session = Depends(get_db),
):
    customer = _get_customer_or_404(db, customer_id)

    changes = data.model_dump(exclude_unset=True)
    if "phone" in changes:
        changes["phone_e164"] = changes.pop("phone")
    for field, value in changes.items():
        setattr(customer, field, value)

    db.commit()
    db.refresh(customer)

    record_audit(
        db,
        action="update",
        resource_type="customer",
        resource_id=customer.id,
        user_id=current_user.user_id,
        details={"fields": sorted(changes.keys())},
        request=request,
    )
    return ok(CustomerResponse.model_validate(customer))
