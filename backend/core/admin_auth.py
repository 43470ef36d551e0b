"""
Admin authentication for billing operations.

Operator endpoints (payment backfill, reconciliation sweep) are protected by a
shared X-Admin-Key secret.

Auth modes (ADMIN_AUTH_MODE):
- "legacy": X-Admin-Key allowed in every environment
- "hybrid": X-Admin-Key allowed outside prod (default)

Every admin action logs the actor id (a hash prefix, never the key).
"""
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from backend.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "legacy:<hash>"
    actor_display: Optional[str] = None
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> Optional[str]:
    """Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_KEY."""
    env_key = os.getenv("ADMIN_API_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_KEY


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Return an AdminActor for a valid X-Admin-Key header, else None."""
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(
        actor_id=f"legacy:{key_hash}",
        actor_display="Admin Key",
    )


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    mode = settings.ADMIN_AUTH_MODE.lower()
    env = settings.ENVIRONMENT.lower()

    if mode not in {"legacy", "hybrid"}:
        return None
    # In production, shared keys need an explicit opt-in
    if env == "prod" and mode != "legacy":
        return None
    return verify_admin_key(request)


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.post("/v1/admin/billing/reconcile")
        def reconcile(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = get_admin_actor(request)
    if actor:
        return actor

    if not get_admin_api_key():
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Admin authentication not configured",
                "code": "admin_auth_unconfigured",
                "hint": "Set ADMIN_KEY",
            },
        )

    raise HTTPException(
        status_code=401,
        detail={
            "error": "Unauthorized: invalid or missing admin credentials",
            "code": "admin_unauthorized",
            "hint": f"Mode: {settings.ADMIN_AUTH_MODE.lower()}. Use the X-Admin-Key header.",
        },
    )
