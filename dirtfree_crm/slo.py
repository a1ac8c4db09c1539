"""
Service level objective counters

Daily success/failure counters in Redis, evaluated against the targets in
config. Recording is best-effort and never affects the request being served.
"""

import logging
from datetime import datetime, timedelta

from .config import SLO_REMINDER_DELIVERY_TARGET, SLO_SMS_INBOUND_VERIFY_ERROR_RATE_MAX
from .rate_limiter import get_redis_client

logger = logging.getLogger(__name__)

SLO_SMS_INBOUND_VERIFY = "sms_inbound_verify"
SLO_SMS_DELIVERY = "sms_delivery"

COUNTER_TTL_SECONDS = 7 * 24 * 3600
EVALUATION_WINDOW_DAYS = 7


def _counter_key(name: str, outcome: str, day: datetime) -> str:
    return f"slo:{name}:{day.strftime('%Y-%m-%d')}:{outcome}"


def record_slo_event(name: str, success: bool) -> None:
    """Increment today's success or failure counter for `name`"""
    outcome = "success" if success else "failure"
    key = _counter_key(name, outcome, datetime.utcnow())
    try:
        client = get_redis_client()
        pipe = client.pipeline()
        pipe.incr(key)
        pipe.expire(key, COUNTER_TTL_SECONDS)
        pipe.execute()
    except Exception as e:
        logger.warning(f"⚠️ Failed to record SLO event {name}/{outcome}: {e}")


def get_slo_counts(name: str, days: int = EVALUATION_WINDOW_DAYS) -> dict:
    """Sum success and failure counters over the last `days` days"""
    client = get_redis_client()
    today = datetime.utcnow()
    totals = {"success": 0, "failure": 0}
    for offset in range(days):
        day = today - timedelta(days=offset)
        for outcome in totals:
            value = client.get(_counter_key(name, outcome, day))
            totals[outcome] += int(value) if value else 0
    totals["total"] = totals["success"] + totals["failure"]
    return totals


def evaluate_slos(days: int = EVALUATION_WINDOW_DAYS) -> dict:
    """
    Compare recorded outcomes with their targets.

    An SLO with no recorded events is reported as met.
    """
    verify = get_slo_counts(SLO_SMS_INBOUND_VERIFY, days)
    verify_error_rate = verify["failure"] / verify["total"] if verify["total"] else 0.0

    delivery = get_slo_counts(SLO_SMS_DELIVERY, days)
    delivery_rate = delivery["success"] / delivery["total"] if delivery["total"] else 1.0

    return {
        "window_days": days,
        "slos": {
            SLO_SMS_INBOUND_VERIFY: {
                "counts": verify,
                "error_rate": round(verify_error_rate, 4),
                "target_max_error_rate": SLO_SMS_INBOUND_VERIFY_ERROR_RATE_MAX,
                "met": verify_error_rate <= SLO_SMS_INBOUND_VERIFY_ERROR_RATE_MAX,
            },
            SLO_SMS_DELIVERY: {
                "counts": delivery,
                "success_rate": round(delivery_rate, 4),
                "target_success_rate": SLO_REMINDER_DELIVERY_TARGET,
                "met": delivery_rate >= SLO_REMINDER_DELIVERY_TARGET,
            },
        },
    }
