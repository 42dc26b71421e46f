"""Security dependencies for the billing API"""
import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request

from app.core.config import settings
from app.db.redis import get_session

security_logger = logging.getLogger("security")


def require_employer(request: Request) -> int:
    """Dependency: Require an employer session, return employer_id

    Sessions are created by the job-board application and shared through Redis.
    """
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    employer_id = get_session(session_id)
    if not employer_id:
        raise HTTPException(401, "Session expired. Please log in again.")

    return employer_id


def require_admin_token(request: Request, x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> None:
    """Dependency: Require the operator token for admin endpoints"""
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(503, "Admin API is not configured")

    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        security_logger.warning(
            f"Admin token rejected - IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(403, "Invalid admin token")
