"""
Webhook Security Module

Signature verification for every inbound webhook endpoint:
- Twilio (X-Twilio-Signature, HMAC-SHA1 over URL + sorted form params)
- Stripe (Stripe-Signature, HMAC-SHA256 over "timestamp.payload")
- Resend via Svix (svix-signature, HMAC-SHA256 over "id.timestamp.payload")

All comparisons are constant-time and a missing secret always rejects.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Mapping, Optional

from fastapi import HTTPException, Request

from .config import TWILIO_WEBHOOK_BASE_URL

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


def constant_time_compare(a: Optional[str], b: Optional[str]) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Empty values never match.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def extract_svix_signing_key(secret: str) -> bytes:
    """
    Extract Svix signing key bytes from a whsec_ style secret.

    The HMAC key is the base64-decoded part after "whsec_"; secrets that are
    not valid base64 are used as raw UTF-8 bytes.
    """
    encoded = secret[6:] if secret.startswith("whsec_") else secret
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return secret.encode("utf-8")


def verify_timestamp(timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS) -> bool:
    """
    Verify webhook timestamp is within acceptable range.
    Prevents replay attacks by rejecting old webhooks.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds

    Returns:
        True if timestamp is valid, False otherwise
    """
    if not timestamp:
        return False

    try:
        webhook_time = int(timestamp)
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False

    age = abs(int(time.time()) - webhook_time)
    if age > max_age:
        logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
        return False

    return True


# ---------------------------------------------------------------------------
# Twilio
# ---------------------------------------------------------------------------


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """
    Compute the X-Twilio-Signature value for a form-encoded POST.

    The signed string is the full request URL followed by every POST
    parameter name and value, sorted by name.
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("utf-8")


def validate_twilio_signature(
    auth_token: Optional[str], url: str, params: Mapping[str, str], signature: Optional[str]
) -> bool:
    if not auth_token or not signature:
        return False
    expected = compute_twilio_signature(auth_token, url, params)
    return constant_time_compare(expected, signature)


def twilio_request_url(request: Request) -> str:
    """
    URL Twilio signed for this request.

    Behind a proxy the URL the app sees differs from the public one, so
    TWILIO_WEBHOOK_BASE_URL (when set) replaces scheme and host.
    """
    if TWILIO_WEBHOOK_BASE_URL:
        url = TWILIO_WEBHOOK_BASE_URL.rstrip("/") + request.url.path
        if request.url.query:
            url += f"?{request.url.query}"
        return url
    return str(request.url)


async def verify_twilio_webhook(
    request: Request, auth_token: Optional[str], raise_on_failure: bool = True
) -> tuple[bool, dict]:
    """
    Verify a Twilio webhook signature.

    Args:
        request: FastAPI request object
        auth_token: Twilio account auth token
        raise_on_failure: If True, raises HTTPException on failure

    Returns:
        Tuple of (is_valid, form params)
    """
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    signature = request.headers.get("X-Twilio-Signature", "")

    if not auth_token:
        logger.error("❌ TWILIO_AUTH_TOKEN not configured, rejecting Twilio webhook")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Webhook verification unavailable")
        return False, params

    if not signature:
        logger.warning("🚫 Twilio webhook missing signature header")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        return False, params

    if not validate_twilio_signature(auth_token, twilio_request_url(request), params, signature):
        logger.warning(f"🚫 Twilio webhook signature mismatch for {request.url.path}")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
        return False, params

    logger.debug("✅ Twilio webhook signature verified")
    return True, params


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


async def verify_stripe_webhook(
    request: Request, secret: Optional[str], raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify Stripe webhook signature.

    Stripe uses:
    - Header: 'Stripe-Signature' (format: "t=<timestamp>,v1=<signature>")

    Args:
        request: FastAPI request object
        secret: Webhook endpoint secret from Stripe
        raise_on_failure: If True, raises HTTPException on failure

    Returns:
        Tuple of (is_valid, raw_body)
    """
    raw_body = await request.body()
    signature_header = request.headers.get("Stripe-Signature", "")

    logger.debug("📥 Stripe webhook received")

    if not secret:
        logger.error("❌ STRIPE_WEBHOOK_SECRET not configured, rejecting Stripe webhook")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Webhook verification unavailable")
        return False, raw_body

    if not signature_header:
        logger.warning("🚫 Stripe webhook missing signature header")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        return False, raw_body

    # Header may carry several v1 signatures during secret rotation
    timestamp = None
    signatures = []
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not signatures:
        logger.warning("🚫 Stripe webhook invalid signature format")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Invalid signature format")
        return False, raw_body

    if not verify_timestamp(timestamp):
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Webhook timestamp expired")
        return False, raw_body

    signed_payload = timestamp.encode("utf-8") + b"." + raw_body
    expected_signature = compute_hmac_sha256(secret, signed_payload)

    if not any(constant_time_compare(expected_signature, sig) for sig in signatures):
        logger.warning("🚫 Stripe webhook signature mismatch")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
        return False, raw_body

    logger.debug("✅ Stripe webhook signature verified")
    return True, raw_body


# ---------------------------------------------------------------------------
# Resend (Svix)
# ---------------------------------------------------------------------------


def compute_svix_signature(secret: str, msg_id: str, timestamp: str, payload: bytes) -> str:
    signing_key = extract_svix_signing_key(secret)
    signed = b".".join([msg_id.encode("utf-8"), timestamp.encode("utf-8"), payload])
    return base64.b64encode(hmac.new(signing_key, signed, hashlib.sha256).digest()).decode("utf-8")


async def verify_svix_webhook(
    request: Request, secret: Optional[str], raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify a Svix-signed webhook (Resend email events).

    Headers: svix-id, svix-timestamp and svix-signature, where the signature
    header is a space-separated list of "v1,<base64>" entries.

    Returns:
        Tuple of (is_valid, raw_body)
    """
    raw_body = await request.body()
    msg_id = request.headers.get("svix-id", "")
    timestamp = request.headers.get("svix-timestamp", "")
    signature_header = request.headers.get("svix-signature", "")

    if not secret:
        logger.error("❌ RESEND_WEBHOOK_SECRET not configured, rejecting Resend webhook")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Webhook verification unavailable")
        return False, raw_body

    if not msg_id or not timestamp or not signature_header:
        logger.warning("🚫 Svix webhook missing signature headers")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        return False, raw_body

    if not verify_timestamp(timestamp):
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Webhook timestamp expired")
        return False, raw_body

    expected = compute_svix_signature(secret, msg_id, timestamp, raw_body)
    received = [
        entry.split(",", 1)[1]
        for entry in signature_header.split()
        if entry.startswith("v1,")
    ]

    if not any(constant_time_compare(expected, sig) for sig in received):
        logger.warning(f"🚫 Svix webhook signature mismatch for {msg_id}")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
        return False, raw_body

    logger.debug(f"✅ Svix webhook signature verified: {msg_id}")
    return True, raw_body


def create_webhook_signature(secret: str, payload: bytes, provider: str = "stripe") -> str:
    """
    Create a webhook signature header value, for testing and replay tools.

    Args:
        secret: Signing secret
        payload: Request body bytes
        provider: Provider format ('stripe' or 'svix')
    """
    timestamp = str(int(time.time()))
    if provider == "svix":
        return f"v1,{compute_svix_signature(secret, 'msg_test', timestamp, payload)}"
    sig = compute_hmac_sha256(secret, timestamp.encode("utf-8") + b"." + payload)
    return f"t={timestamp},v1={sig}"
