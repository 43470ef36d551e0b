"""
User projection service.
- upsert_user(user_id, email)
- find_user_by_email(email)
- soft_delete_account(user_id)
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
import logging

from sqlalchemy import select, insert, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.core.database import get_db_session, users as app_users, purchases
from backend.core.errors import InvalidRequest, PersistenceError
from backend.features.entitlements.service import STATUS_INACTIVE


logger = logging.getLogger("logedin")


def find_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    """Case-insensitive lookup; deleted users are skipped."""
    if not email:
        return None
    with get_db_session() as session:
        row = session.execute(
            select(app_users)
            .where(func.lower(app_users.c.email) == email.strip().lower())
            .where(app_users.c.is_deleted.is_(False))
            .order_by(app_users.c.created_at.desc())
        ).mappings().first()
        return dict(row) if row else None


def upsert_user(user_id: str, email: Optional[str] = None) -> None:
    """Mirror an authenticated identity into app_users."""
    with get_db_session() as session:
        existing = session.execute(
            select(app_users.c.email).where(app_users.c.user_id == user_id)
        ).first()
        if existing:
            if email and existing.email != email:
                session.execute(
                    update(app_users).where(app_users.c.user_id == user_id).values(email=email)
                )
            return

        try:
            session.execute(
                insert(app_users).values(
                    user_id=user_id,
                    email=email,
                    is_deleted=False,
                    created_at=datetime.now(timezone.utc),
                )
            )
            session.commit()
        except IntegrityError:
            # Concurrent first request for the same user
            session.rollback()


def soft_delete_account(user_id: str) -> int:
    """
    Soft-delete an account.

    Every purchase of the user goes inactive (rows are kept) and the user
    projection is flagged deleted. Returns the number of purchases revoked.
    """
    if not user_id:
        raise InvalidRequest("User ID is required")

    now = datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            result = session.execute(
                update(purchases)
                .where(purchases.c.user_id == user_id)
                .where(purchases.c.status != STATUS_INACTIVE)
                .values(status=STATUS_INACTIVE, updated_at=now)
            )
            revoked = result.rowcount or 0

            updated = session.execute(
                update(app_users)
                .where(app_users.c.user_id == user_id)
                .values(is_deleted=True, deleted_at=now)
            )
            if not updated.rowcount:
                session.execute(
                    insert(app_users).values(
                        user_id=user_id,
                        is_deleted=True,
                        deleted_at=now,
                        created_at=now,
                    )
                )
    except SQLAlchemyError as e:
        logger.error(f"[account] soft delete failed for {user_id}: {e}")
        raise PersistenceError("Failed to process account deletion")

    logger.info(
        "account.soft_deleted",
        extra={"user_id": user_id, "result": f"revoked={revoked}"},
    )
    return revoked
