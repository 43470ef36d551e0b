"""
Auth utilities for the Loged.in API.

Validates Supabase access tokens (HS256 JWTs signed with the project's JWT
secret) and extracts the caller's user id. When no JWT secret is configured
(local development, tests) the X-User-Id header is accepted instead.
"""
from dataclasses import dataclass
from typing import Mapping, Optional
import logging

import jwt
from fastapi import Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from backend.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthIdentity:
    user_id: str
    email: Optional[str] = None


def verify_supabase_jwt(token: str) -> Optional[AuthIdentity]:
    """
    Verify a Supabase access token and return the caller identity.

    Returns None when JWT verification is not configured.

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.SUPABASE_JWT_SECRET:
        logger.debug("No SUPABASE_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.SUPABASE_JWT_AUDIENCE,
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return AuthIdentity(user_id=user_id, email=payload.get("email"))


def identity_from_headers(headers: Mapping[str, str]) -> Optional[AuthIdentity]:
    """
    Resolve the caller from request or WebSocket headers.

    Priority:
    1. Supabase JWT from the Authorization header
    2. X-User-Id header, only while JWT verification is not configured
    """
    auth_header = headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        identity = verify_supabase_jwt(auth_header[7:].strip())
        if identity:
            return identity

    if settings.SUPABASE_JWT_SECRET:
        return None

    x_user_id = headers.get("x-user-id")
    if x_user_id:
        return AuthIdentity(user_id=x_user_id)
    return None


async def get_current_identity(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test user ID"),
) -> AuthIdentity:
    """
    FastAPI dependency returning the authenticated caller.

    Raises:
        HTTPException 401: Missing authentication
    """
    identity = identity_from_headers(request.headers)
    if identity:
        # Keep the local user projection in step with the auth provider
        try:
            from backend.features.users.service import upsert_user
            await run_in_threadpool(upsert_user, identity.user_id, identity.email)
        except Exception as e:
            logger.warning(f"Failed to upsert user {identity.user_id}: {e}")
        return identity

    raise HTTPException(
        status_code=401,
        detail={
            "error": "unauthorized",
            "message": "Missing Authorization (Bearer JWT) or X-User-Id header",
        },
    )

