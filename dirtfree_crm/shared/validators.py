"""Shared validation utilities"""

import re
from typing import Optional

# Characters people and carriers use to format phone numbers
_PHONE_ALLOWED = re.compile(r"^[\d\s+().\-]+$")
_E164 = re.compile(r"^\+[1-9]\d{9,14}$")


def normalize_phone(phone: Optional[str]) -> str:
    """
    Normalize a phone number to E.164 format.

    10-digit numbers are treated as US numbers (+1 prefix), 11-digit numbers
    starting with 1 get a leading +, longer numbers are assumed to already
    carry a country code.

    Raises:
        ValueError: If the value cannot be a dialable phone number
    """
    if not phone or not phone.strip():
        raise ValueError("Phone number is required")

    phone = phone.strip()
    if not _PHONE_ALLOWED.match(phone):
        raise ValueError("Phone number contains invalid characters")

    digits = re.sub(r"\D", "", phone)

    if len(digits) == 10:
        normalized = f"+1{digits}"
    elif len(digits) == 11 and digits.startswith("1"):
        normalized = f"+{digits}"
    elif len(digits) > 11 or (len(digits) == 11 and phone.startswith("+")):
        normalized = f"+{digits}"
    else:
        raise ValueError("Phone number must have 10 digits or include a country code")

    if not _E164.match(normalized):
        raise ValueError("Phone number is not a valid E.164 number")

    return normalized


def validate_us_phone(phone: Optional[str]) -> Optional[str]:
    """Validate an optional phone field; empty values pass through unchanged"""
    if not phone:
        return phone
    return normalize_phone(phone)


def mask_phone(phone: Optional[str]) -> str:
    """Mask a phone number for logs, keeping only the last four digits"""
    if not phone:
        return "unknown"
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 4:
        return "***"
    return f"***-***-{digits[-4:]}"


def validate_email(email: Optional[str]) -> Optional[str]:
    """
    Validate email format.

    Returns:
        Lowercase email address

    Raises:
        ValueError: If email format is invalid
    """
    if not email:
        return email

    email = email.strip().lower()

    email_pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"

    if not re.match(email_pattern, email):
        raise ValueError("Invalid email format")

    return email
