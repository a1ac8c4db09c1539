"""
Sentry error reporting with PII scrubbing.

Events leave the process only after phone numbers are masked, emails are
replaced and SMS bodies are dropped.
"""
import logging
import re
from typing import Any, Dict, Optional

import sentry_sdk

from .config import SENTRY_DSN, SENTRY_ENVIRONMENT, SENTRY_RELEASE, SENTRY_TRACES_SAMPLE_RATE
from .shared.validators import mask_phone

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
PHONE_PATTERN = re.compile(r"\+?\(?\d[\d\s\-().]{8,}\d")

# Request fields that carry message text or other free-form customer content
SENSITIVE_FIELDS = {"Body", "body", "message", "text", "html"}
FILTERED = "[Filtered]"


def _mask_phone_match(match: re.Match) -> str:
    candidate = match.group(0)
    digits = re.sub(r"\D", "", candidate)
    if 10 <= len(digits) <= 15:
        return mask_phone(candidate)
    return candidate


def scrub_text(value: Any) -> Any:
    """Mask phone numbers and replace email addresses inside a string"""
    if not isinstance(value, str):
        return value
    value = EMAIL_PATTERN.sub("[EMAIL]", value)
    return PHONE_PATTERN.sub(_mask_phone_match, value)


def _scrub_mapping(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            key: FILTERED if key in SENSITIVE_FIELDS else _scrub_mapping(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_scrub_mapping(item) for item in data]
    return scrub_text(data)


def scrub_event(event: Dict[str, Any], hint: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """before_send hook for sentry_sdk.init"""
    if "message" in event:
        event["message"] = scrub_text(event["message"])

    logentry = event.get("logentry")
    if logentry:
        for key in ("message", "formatted"):
            if key in logentry:
                logentry[key] = scrub_text(logentry[key])
        if logentry.get("params"):
            logentry["params"] = _scrub_mapping(logentry["params"])

    for exception in (event.get("exception") or {}).get("values", []):
        if exception.get("value"):
            exception["value"] = scrub_text(exception["value"])
        for frame in (exception.get("stacktrace") or {}).get("frames", []):
            if frame.get("vars"):
                frame["vars"] = _scrub_mapping(frame["vars"])

    request = event.get("request")
    if request:
        if "data" in request:
            request["data"] = _scrub_mapping(request["data"])
        if request.get("query_string"):
            request["query_string"] = scrub_text(request["query_string"])
        request.pop("cookies", None)

    user = event.get("user")
    if user:
        event["user"] = {"id": user["id"]} if "id" in user else {}

    breadcrumbs = event.get("breadcrumbs")
    if breadcrumbs:
        for crumb in breadcrumbs.get("values", []):
            scrub_breadcrumb(crumb)

    return event


def scrub_breadcrumb(crumb: Dict[str, Any], hint: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """before_breadcrumb hook; log lines become breadcrumbs too"""
    if crumb.get("message"):
        crumb["message"] = scrub_text(crumb["message"])
    if crumb.get("data"):
        crumb["data"] = _scrub_mapping(crumb["data"])
    return crumb


def init_error_tracking() -> bool:
    """Initialize Sentry when SENTRY_DSN is set. Returns whether it was enabled."""
    if not SENTRY_DSN:
        return False

    sentry_sdk.init(
        dsn=SENTRY_DSN,
        traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
        environment=SENTRY_ENVIRONMENT,
        release=SENTRY_RELEASE,
        send_default_pii=False,
        before_send=scrub_event,
        before_breadcrumb=scrub_breadcrumb,
    )
    logger.info(f"✅ Sentry enabled ({SENTRY_ENVIRONMENT})")
    return True
