"""
Last-known-value holder for a user's entitlement.

Client-side helper for consumers of /v1/ws/entitlement. Socket messages keep
the cached answer fresh between fetches.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional

from backend.features.entitlements.service import EntitlementStatus, get_entitlement, STATUS_ACTIVE, LIFETIME_PRO

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], EntitlementStatus]


class EntitlementWatcher:
    """
    Holds the latest known entitlement for one signed-in user.

    - refresh(): one-shot fetch, errors degrade to active=False
    - apply(message): fold in an entitlement.changed push
    - invalidate(user_id): sign-in (or user switch), drop the value and refetch
    - clear(): sign-out
    """

    def __init__(self, user_id: Optional[str] = None, fetcher: Optional[Fetcher] = None):
        self._fetcher = fetcher or get_entitlement
        self._lock = threading.Lock()
        self.user_id = user_id
        self._status: Optional[EntitlementStatus] = None

    @property
    def status(self) -> EntitlementStatus:
        with self._lock:
            return self._status or EntitlementStatus(active=False)

    @property
    def active(self) -> bool:
        return self.status.active

    @property
    def loaded(self) -> bool:
        with self._lock:
            return self._status is not None

    def refresh(self) -> EntitlementStatus:
        user_id = self.user_id
        if not user_id:
            return EntitlementStatus(active=False)
        try:
            status = self._fetcher(user_id)
        except Exception as e:
            logger.warning(f"[entitlements] refresh failed for {user_id}: {e}")
            status = EntitlementStatus(active=False)
        with self._lock:
            # Sign-out or user switch while the fetch was in flight
            if self.user_id != user_id:
                return self._status or EntitlementStatus(active=False)
            self._status = status
        return status

    def apply(self, message: Dict[str, Any]) -> EntitlementStatus:
        """Apply a realtime message (snapshot or changed)."""
        msg_type = message.get("type")
        if msg_type == "entitlement.snapshot":
            status = EntitlementStatus(active=bool(message.get("active")), record=message.get("record"))
            with self._lock:
                self._status = status
            return status

        if msg_type != "entitlement.changed":
            return self.status

        record = message.get("record") or {}
        if self.user_id and record.get("user_id") not in (None, self.user_id):
            return self.status

        if record.get("status") == STATUS_ACTIVE and record.get("purchase_type", LIFETIME_PRO) == LIFETIME_PRO:
            status = EntitlementStatus(active=True, record=record)
            with self._lock:
                self._status = status
            return status

        # A row went inactive; another active row may still exist
        return self.refresh()

    def invalidate(self, user_id: Optional[str] = None) -> EntitlementStatus:
        with self._lock:
            if user_id is not None:
                self.user_id = user_id
            self._status = None
        return self.refresh()

    def clear(self) -> None:
        with self._lock:
            self.user_id = None
            self._status = None
