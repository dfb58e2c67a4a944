"""
Admin authentication for operator endpoints (integrity audit).

Operators authenticate with the X-Admin-Key shared secret. Admin screens
themselves live outside this service; only read-only diagnostics are exposed.
"""
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from unlocks.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "key:<hash>"
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> str | None:
    """Get admin API key.
    Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_KEY.
    """
    env_key = os.getenv("ADMIN_API_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_KEY


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """
    Verify X-Admin-Key header.
    Returns AdminActor if valid, None if not present/invalid.
    """
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.
    Raises HTTPException if authentication fails.
    """
    if not get_admin_api_key():
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Admin authentication not configured",
                "code": "admin_auth_unconfigured",
                "hint": "Set ADMIN_KEY or ADMIN_API_KEY",
            }
        )

    actor = verify_admin_key(request)
    if not actor:
        raise HTTPException(
            status_code=401,
            detail={
                "error": "Unauthorized: invalid or missing admin credentials",
                "code": "admin_unauthorized",
            }
        )
    return actor
