"""
Invoice Models for Customer Billing
"""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


class Invoice(Base):
    """Invoice model for customer billing"""

    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    # Public UUID for payment links (prevents enumeration)
    public_id = Column(
        String(36), unique=True, nullable=False, index=True, default=generate_public_id
    )
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True)

    invoice_number = Column(String(50), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    total_amount = Column(Float, nullable=False)
    currency = Column(String(10), default="USD")

    status = Column(String(50), default="pending")  # pending, sent, paid, void

    # Stripe integration
    stripe_payment_intent_id = Column(String(255), nullable=True)

    issue_date = Column(DateTime, server_default=func.now())
    due_date = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    customer = relationship("Customer", back_populates="invoices")
    job = relationship("Job")
