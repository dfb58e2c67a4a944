"""
Auth utilities for the unlocks API.

Session issuance lives outside this service; requests arrive with a Bearer
JWT signed with AUTH_JWT_SECRET (HS256) whose `sub` claim is the user id.
Outside production, and only while no AUTH_JWT_SECRET is configured, the
X-User-Id header is accepted instead (local development, tests).
"""
from fastapi import Header, HTTPException, Request
from typing import Optional
import os
from unlocks.core.config import settings
import jwt
import logging

logger = logging.getLogger(__name__)


def verify_session_jwt(token: str) -> Optional[str]:
    """
    Verify a session JWT and extract user_id.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        user_id from the 'sub' claim, or None when no secret is configured

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.debug("No AUTH_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True}
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return user_id


def header_identity_allowed() -> bool:
    """X-User-Id is trusted only in non-production without a JWT secret."""
    if settings.AUTH_JWT_SECRET:
        return False
    env = os.getenv("ENV") or settings.ENV or "development"
    return env.lower() != "production"


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Backward compat: test user ID")
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Session JWT from Authorization header
    2. X-User-Id header (only when header_identity_allowed())
    3. Raise 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_session_jwt(auth_header[7:])
        if user_id:
            return user_id

    if x_user_id and header_identity_allowed():
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )
