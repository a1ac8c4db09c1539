from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime

from .models import JOB_STATUSES
from .shared.validators import validate_email, validate_us_phone


# Customer Schemas
class CustomerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)
    sms_notifications: bool = True
    email_notifications: bool = True

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        return validate_us_phone(v)

    @field_validator("email")
    @classmethod
    def validate_email_field(cls, v):
        return validate_email(v)


class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)
    sms_notifications: Optional[bool] = None
    email_notifications: Optional[bool] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        return validate_us_phone(v)

    @field_validator("email")
    @classmethod
    def validate_email_field(cls, v):
        return validate_email(v)


class CustomerResponse(BaseModel):
    id: int
    name: str
    email: Optional[str]
    phone_e164: Optional[str]
    address_line1: Optional[str]
    city: Optional[str]
    state: Optional[str]
    postal_code: Optional[str]
    notes: Optional[str]
    sms_notifications: bool
    email_notifications: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Job Schemas
class JobCreate(BaseModel):
    customer_id: int
    technician_id: Optional[int] = None
    scheduled_date: datetime
    service_type: Optional[str] = None
    status: str = "scheduled"
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v not in JOB_STATUSES:
            raise ValueError(f"status must be one of {', '.join(JOB_STATUSES)}")
        return v


class JobStatusUpdate(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v not in JOB_STATUSES:
            raise ValueError(f"status must be one of {', '.join(JOB_STATUSES)}")
        return v


class JobResponse(BaseModel):
    id: int
    customer_id: int
    technician_id: Optional[int]
    scheduled_date: datetime
    service_type: Optional[str]
    status: str
    notes: Optional[str]
    reminder_sent_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Invoice Schemas
class InvoiceCreate(BaseModel):
    customer_id: int
    job_id: Optional[int] = None
    description: Optional[str] = None
    total_amount: float = Field(..., gt=0)
    currency: str = "USD"
    due_days: int = Field(15, ge=0, le=365)


class InvoiceResponse(BaseModel):
    id: int
    public_id: str
    invoice_number: str
    customer_id: int
    job_id: Optional[int]
    description: Optional[str]
    total_amount: float
    currency: str
    status: str
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime]
    paid_at: Optional[datetime]

    class Config:
        from_attributes = True


# SMS Schemas
class SmsSendRequest(BaseModel):
    to: str
    body: str = Field(..., min_length=1, max_length=1600)
    customer_id: Optional[int] = None
    job_id: Optional[int] = None


class SmsMessageResponse(BaseModel):
    id: int
    sid: str
    direction: str
    to_number: str
    from_number: str
    body: str
    message_type: Optional[str]
    status: str
    error_code: Optional[str]
    error_message: Optional[str]
    customer_id: Optional[int]
    job_id: Optional[int]
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SmsOptOutResponse(BaseModel):
    id: int
    phone_number: str
    customer_id: Optional[int]
    is_active: bool
    reason: Optional[str]
    opted_out_at: Optional[datetime]
    opted_in_at: Optional[datetime]

    class Config:
        from_attributes = True


# Admin Schemas
class AuditLogResponse(BaseModel):
    id: int
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    details: Optional[dict]
    ip_address: Optional[str]
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CronRunResponse(BaseModel):
    job_name: str
    status: str
    processed_count: int
    skipped_count: int
    failed_count: int
    job_ids: List[int] = []
