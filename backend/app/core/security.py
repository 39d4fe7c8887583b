"""Authentication dependencies for user, admin and internal callers"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.redis import get_session
from app.db.session import get_db
from app.models.user import User

security_logger = logging.getLogger("security")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id

    Accepts an `Authorization: Bearer <session token>` header, falling back to
    the `session_id` cookie.
    """
    token = _bearer_token(request.headers.get("Authorization")) or request.cookies.get("session_id")

    if not token:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(token)
    if not user_id:
        security_logger.warning(f"Rejected unknown or expired session token on {request.url.path}")
        raise HTTPException(401, "Session expired. Please log in again.")

    return user_id


def get_current_user(user_id: int = Depends(require_auth), db: Session = Depends(get_db)) -> User:
    """Dependency: Resolve the authenticated user"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(401, "User not found")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    """Dependency: Require admin role"""
    if not user.is_admin:
        raise HTTPException(403, "Admin access required")
    return user


def is_internal_caller(authorization: Optional[str]) -> bool:
    token = _bearer_token(authorization)
    if not token or not settings.INTERNAL_API_KEY:
        return False
    return hmac.compare_digest(token, settings.INTERNAL_API_KEY)


def require_internal_key(authorization: Optional[str] = Header(None)) -> None:
    """Dependency: Require the internal API key used by cron jobs and workflows"""
    if not settings.INTERNAL_API_KEY:
        security_logger.error("INTERNAL_API_KEY is not configured; rejecting internal call")
        raise HTTPException(503, "Internal API key not configured")
    if not is_internal_caller(authorization):
        security_logger.warning("Rejected internal call with invalid API key")
        raise HTTPException(401, "Invalid internal API key")
