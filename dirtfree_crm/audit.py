import logging
from typing import Any, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from .models import AuditLog
from .rate_limiter import get_client_ip

logger = logging.getLogger(__name__)


def record_audit(
    db: Session,
    action: str,
    resource_type: str,
    resource_id: Any = None,
    user_id: Optional[str] = None,
    details: Optional[dict] = None,
    request: Optional[Request] = None,
) -> Optional[AuditLog]:
    """
    Append an audit entry. Never raises: the caller's change has already been
    committed and must stand even if auditing fails.
    """
    try:
        entry = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details,
            ip_address=get_client_ip(request) if request is not None else None,
        )
        db.add(entry)
        db.commit()
        return entry
    except Exception as e:
        logger.error(f"❌ Failed to write audit log {action} {resource_type}: {e}")
        db.rollback()
        return None
