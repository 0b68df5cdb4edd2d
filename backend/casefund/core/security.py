"""Security dependencies and request logging"""
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Header, HTTPException, Request

from casefund.core.config import settings
from casefund.db import redis as redis_store

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = redis_store.get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")

    return user_id


def require_operator(
    request: Request,
    authorization: Optional[str] = Header(None)
) -> str:
    """Dependency: operator / cron endpoints authenticate with a shared bearer key"""
    expected = settings.OPERATOR_API_KEY
    if not expected:
        security_logger.error("OPERATOR_API_KEY not configured - operator endpoints are disabled")
        raise HTTPException(503, "Operator access is not configured")

    supplied = ""
    if authorization and authorization.lower().startswith("bearer "):
        supplied = authorization.split(" ", 1)[1].strip()

    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        security_logger.warning(
            f"Operator authentication failed - "
            f"IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(401, "Unauthorized")

    return "operator"


def get_client_identifier(request: Request, session_id: Optional[str] = None) -> str:
    """Get a unique identifier for rate limiting"""
    if session_id:
        return f"session:{session_id}"

    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


def check_rate_limit(identifier: str) -> bool:
    """Check if request is within rate limit"""
    return redis_store.check_rate_limit(identifier)


def log_api_access(
    request: Request,
    session_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log API access information"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "session_id": session_id[:16] + "..." if session_id else None,
        "client_ip": client_ip,
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
