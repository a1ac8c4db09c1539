import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError
from jose import jwt as jose_jwt
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .config import AUTH_COOKIE_NAME, SUPABASE_JWT_AUDIENCE, SUPABASE_JWT_SECRET
from .database import get_db
from .models import OFFICE_ROLES, ROLE_TECHNICIAN, Technician, UserRole

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

ALGORITHM = "HS256"


class CurrentUser(BaseModel):
    """Authenticated staff member with the role read from user_roles"""

    user_id: str
    email: Optional[str] = None
    role: str
    technician_id: Optional[int] = None

    @property
    def is_technician(self) -> bool:
        return self.role == ROLE_TECHNICIAN

    @property
    def is_office(self) -> bool:
        return self.role in OFFICE_ROLES


def decode_access_token(token: str) -> dict:
    """
    Verify a Supabase access token (HS256, audience "authenticated").

    Raises:
        HTTPException: 401 for any invalid, expired or unverifiable token
    """
    if not SUPABASE_JWT_SECRET:
        logger.error("❌ SUPABASE_JWT_SECRET not configured")
        raise HTTPException(status_code=401, detail="Authentication not configured")

    try:
        return jose_jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=[ALGORITHM],
            audience=SUPABASE_JWT_AUDIENCE,
        )
    except ExpiredSignatureError as e:
        raise HTTPException(
            status_code=401,
            detail="Token has expired. Please refresh your session.",
            headers={"X-Token-Expired": "true"},
        ) from e
    except JWTError as e:
        logger.warning(f"⚠️ Token verification failed: {type(e).__name__}")
        raise HTTPException(status_code=401, detail="Invalid token") from e


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    if credentials and credentials.credentials:
        return credentials.credentials
    cookie_token = request.cookies.get(AUTH_COOKIE_NAME)
    if cookie_token:
        return cookie_token
    raise HTTPException(
        status_code=401,
        detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
    )


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> CurrentUser:
    """Resolve the caller from their access token; the role is looked up on every request"""
    token = _extract_token(request, credentials)
    claims = decode_access_token(token)

    user_id = claims.get("sub")
    if not user_id:
        logger.error("❌ Token missing sub claim")
        raise HTTPException(status_code=401, detail="Invalid token claims")

    role_row = db.query(UserRole).filter(UserRole.user_id == user_id).first()
    if not role_row:
        logger.warning(f"⚠️ Authenticated user {user_id} has no staff role")
        raise HTTPException(status_code=403, detail="No role assigned to this account")

    technician_id = None
    if role_row.role == ROLE_TECHNICIAN:
        technician = db.query(Technician).filter(Technician.user_id == user_id).first()
        technician_id = technician.id if technician else None

    user = CurrentUser(
        user_id=user_id,
        email=claims.get("email") or role_row.email,
        role=role_row.role,
        technician_id=technician_id,
    )
    request.state.user_id = user_id
    logger.debug(f"✅ User authenticated: {user_id} ({user.role})")
    return user


def require_roles(*roles: str):
    """
    Dependency factory restricting a route to the given roles

    Example usage:
        @router.post("/send")
        async def send(current_user: CurrentUser = Depends(require_roles(*OFFICE_ROLES))):
            ...
    """

    async def role_checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in roles:
            logger.warning(
                f"🚫 Role {current_user.role} denied; requires one of {', '.join(roles)}"
            )
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return current_user

    return role_checker
