"""
Twilio SMS Models
Message log (inbound and outbound) and the per-number opt-out list
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class SmsMessage(Base):
    """Every SMS we sent or received, keyed by Twilio's MessageSid"""

    __tablename__ = "sms_messages"

    id = Column(Integer, primary_key=True, index=True)
    sid = Column(String(64), unique=True, nullable=False, index=True)
    direction = Column(String(10), nullable=False)  # inbound, outbound
    to_number = Column(String(20), nullable=False, index=True)
    from_number = Column(String(20), nullable=False)
    body = Column(Text, nullable=False, default="")
    message_type = Column(String(50), nullable=True)  # reminder, manual, keyword_reply

    # queued, sending, sent, delivered, undelivered, failed, received
    status = Column(String(30), nullable=False, default="queued")
    error_code = Column(String(20), nullable=True)
    error_message = Column(Text, nullable=True)
    # NumMedia / MediaUrl for inbound MMS
    extra = Column(JSON, nullable=True)

    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True)

    created_at = Column(DateTime, server_default=func.now(), index=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    customer = relationship("Customer")


class SmsOptOut(Base):
    """Opt-out flag per phone number; is_active=True suppresses outbound SMS"""

    __tablename__ = "sms_opt_outs"

    id = Column(Integer, primary_key=True, index=True)
    phone_number = Column(String(20), unique=True, nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    reason = Column(String(255), nullable=True)
    opted_out_at = Column(DateTime, nullable=True)
    opted_in_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
