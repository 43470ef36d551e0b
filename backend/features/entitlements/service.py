"""
backend/features/entitlements/service.py

Entitlement reader.

Answers "does this user hold an active lifetime_pro entitlement?" and maps
the answer onto feature limits. Reads never fail open: a storage error is
logged and reported as "no entitlement".
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from sqlalchemy import select, and_
from sqlalchemy.exc import SQLAlchemyError

from backend.core.database import get_db_session, purchases


logger = logging.getLogger(__name__)

LIFETIME_PRO = "lifetime_pro"
STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"

UNLIMITED = -1
FREE_JOURNEY_LIMIT = 1


@dataclass
class EntitlementStatus:
    active: bool
    record: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"active": self.active}
        if self.record is not None:
            payload["record"] = self.record
        return payload


@dataclass
class PlanLimits:
    """Feature limits derived from the entitlement."""
    journey_limit: int
    can_hide_milestones: bool
    has_verified_badge: bool
    has_custom_themes: bool
    show_watermark: bool
    is_lifetime_pro: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def serialize_record(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """JSON-safe copy of a purchases row."""
    if row is None:
        return None
    out = {}
    for key, value in dict(row).items():
        out[key] = value.isoformat() if isinstance(value, datetime) else value
    return out


def _active_entitlement_query(user_id: str):
    return (
        select(purchases)
        .where(
            and_(
                purchases.c.user_id == user_id,
                purchases.c.status == STATUS_ACTIVE,
                purchases.c.purchase_type == LIFETIME_PRO,
            )
        )
        .order_by(purchases.c.purchased_at.desc())
        .limit(1)
    )


def get_entitlement(user_id: str) -> EntitlementStatus:
    """
    One-shot entitlement fetch.

    No row is a normal result (active=False). Storage errors degrade to
    active=False and are logged.
    """
    try:
        with get_db_session() as session:
            row = session.execute(_active_entitlement_query(user_id)).mappings().fetchone()
    except SQLAlchemyError as e:
        logger.error(
            "[entitlements] read failed, treating as not entitled",
            extra={"user_id": user_id, "error_code": "entitlement_read_failed", "error": str(e)},
        )
        return EntitlementStatus(active=False)

    if row is None:
        return EntitlementStatus(active=False)
    return EntitlementStatus(active=True, record=serialize_record(row))


def has_lifetime_access(user_id: str) -> bool:
    return get_entitlement(user_id).active


def limits_for(is_lifetime_pro: bool) -> PlanLimits:
    if is_lifetime_pro:
        return PlanLimits(
            journey_limit=UNLIMITED,
            can_hide_milestones=True,
            has_verified_badge=True,
            has_custom_themes=True,
            show_watermark=False,
            is_lifetime_pro=True,
        )
    return PlanLimits(
        journey_limit=FREE_JOURNEY_LIMIT,
        can_hide_milestones=False,
        has_verified_badge=False,
        has_custom_themes=False,
        show_watermark=True,
        is_lifetime_pro=False,
    )


def get_plan_limits(user_id: str) -> PlanLimits:
    """Feature limits for the user's current entitlement."""
    return limits_for(has_lifetime_access(user_id))


def can_create_journey(limits: PlanLimits, current_count: int) -> bool:
    """Journey creation gate; the caller owns the journey count."""
    if limits.journey_limit == UNLIMITED:
        return True
    return current_count < limits.journey_limit
