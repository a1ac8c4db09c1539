from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_DISPATCHER = "dispatcher"
ROLE_TECHNICIAN = "technician"
ALL_ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_DISPATCHER, ROLE_TECHNICIAN)
# Roles allowed to manage customers, jobs, invoices and outbound SMS
OFFICE_ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_DISPATCHER)

JOB_STATUSES = ("scheduled", "confirmed", "in_progress", "completed", "cancelled")


class UserRole(Base):
    """Staff role assignment, keyed by the auth provider's user id (JWT sub)"""

    __tablename__ = "user_roles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), unique=True, index=True, nullable=False)
    email = Column(String(255), nullable=True)
    role = Column(String(50), nullable=False)  # admin, manager, dispatcher, technician

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    phone_e164 = Column(String(20), nullable=True, index=True)
    address_line1 = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(50), nullable=True)
    postal_code = Column(String(20), nullable=True)
    notes = Column(String(1000), nullable=True)

    # Communication preferences
    sms_notifications = Column(Boolean, default=True, nullable=False)
    email_notifications = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    jobs = relationship("Job", back_populates="customer", cascade="all, delete-orphan")
    invoices = relationship("Invoice", back_populates="customer", cascade="all, delete-orphan")


class Technician(Base):
    __tablename__ = "technicians"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), unique=True, index=True, nullable=True)  # auth subject
    name = Column(String(255), nullable=False)
    phone_e164 = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    jobs = relationship("Job", back_populates="technician")


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    technician_id = Column(Integer, ForeignKey("technicians.id"), nullable=True, index=True)
    scheduled_date = Column(DateTime, nullable=False, index=True)
    service_type = Column(String(100), nullable=True)  # carpet, upholstery, tile, rug
    # scheduled, confirmed, in_progress, completed, cancelled
    status = Column(String(50), default="scheduled", nullable=False)
    notes = Column(String(1000), nullable=True)
    reminder_sent_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    customer = relationship("Customer", back_populates="jobs")
    technician = relationship("Technician", back_populates="jobs")


class AuditLog(Base):
    """Append-only record of staff mutations"""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=True, index=True)
    action = Column(String(100), nullable=False)  # create, update, delete, payment_received
    resource_type = Column(String(100), nullable=False)
    resource_id = Column(String(100), nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), index=True)


class CronJobLog(Base):
    __tablename__ = "cron_job_logs"

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String(100), nullable=False, index=True)
    status = Column(String(50), nullable=False)  # running, success, failed
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    processed_count = Column(Integer, default=0)
    skipped_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)


class WebhookEvent(Base):
    """Processed provider events; the unique key makes redelivery a no-op"""

    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),)

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(50), nullable=False)  # stripe, resend
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    received_at = Column(DateTime, server_default=func.now())
