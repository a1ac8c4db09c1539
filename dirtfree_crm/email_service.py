"""
Email Service using Resend
Transactional notifications sent to customers
"""

import html
import logging
from datetime import datetime
from typing import Optional, Union

import resend

from .config import COMPANY_NAME, COMPANY_PHONE, EMAIL_FROM_ADDRESS, RESEND_API_KEY

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY


class EmailNotConfiguredError(Exception):
    pass


def _wrap_html(title: str, paragraphs: list[str]) -> str:
    body = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    return (
        f"<html><body style=\"font-family: Arial, sans-serif; color: #1f2937;\">"
        f"<h2>{html.escape(title)}</h2>{body}"
        f"<p style=\"color: #6b7280; font-size: 12px;\">{html.escape(COMPANY_NAME)} "
        f"&middot; {html.escape(COMPANY_PHONE)}</p></body></html>"
    )


async def send_email(
    to: Union[str, list[str]],
    subject: str,
    html_content: str,
    from_address: Optional[str] = None,
) -> dict:
    """
    Send an email through Resend

    Args:
        to: Recipient email(s)
        subject: Email subject line
        html_content: Rendered HTML body
        from_address: Optional custom from address

    Returns:
        Resend response dict
    """
    if not RESEND_API_KEY:
        logger.error("❌ No email service configured - RESEND_API_KEY missing")
        raise EmailNotConfiguredError("Email service not configured")

    recipients = [to] if isinstance(to, str) else to

    try:
        logger.info(f"📧 Sending email via Resend: {subject}")
        response = resend.Emails.send(
            {
                "from": from_address or EMAIL_FROM_ADDRESS,
                "to": recipients,
                "subject": subject,
                "html": html_content,
            }
        )
        logger.info("✅ Email sent successfully via Resend")
        return response
    except Exception as e:
        logger.error(f"❌ Email send error: {e}")
        raise


async def send_payment_receipt_email(
    customer_email: str,
    customer_name: str,
    invoice_number: str,
    amount: float,
    currency: str = "USD",
) -> dict:
    """Send payment receipt to a customer"""
    payment_date = datetime.utcnow().strftime("%B %d, %Y")
    html_content = _wrap_html(
        "Payment received",
        [
            f"Hi {customer_name},",
            f"We received your payment of {amount:.2f} {currency} for invoice "
            f"{invoice_number} on {payment_date}.",
            f"Thank you for choosing {COMPANY_NAME}!",
        ],
    )
    return await send_email(
        to=customer_email,
        subject=f"Payment Received - Thank You! ({invoice_number})",
        html_content=html_content,
    )
