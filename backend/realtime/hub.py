"""
backend/realtime/hub.py
In-memory pubsub hub for entitlement changes.

Each user has a channel; only that user's sockets receive its changes.
Dead sockets are pruned on send.
"""

from typing import Any, Dict, Optional, Set
from datetime import datetime, timezone
from fastapi import WebSocket
import asyncio
import logging

from backend.core.metrics import (
    entitlement_subscribers,
    ws_active_connections,
    ws_connections_total,
    ws_messages_sent_total,
)

logger = logging.getLogger(__name__)

CHANGE_INSERT = "INSERT"
CHANGE_UPDATE = "UPDATE"


class EntitlementHub:
    """
    In-memory channel-per-user broadcast hub.

    Maps user_id -> Set[WebSocket], allows safe concurrent access.
    """

    def __init__(self):
        # user_id -> set of connected WebSockets
        self._channels: Dict[str, Set[Any]] = {}
        self._global_count: int = 0
        self._lock = asyncio.Lock()

    async def register(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._channels.setdefault(user_id, set()).add(websocket)
            self._global_count += 1
            ws_connections_total.inc()
            ws_active_connections.set(self._global_count)
            entitlement_subscribers.set(len(self._channels))
            logger.debug(f"[HUB] Registered socket for user {user_id}. Total: {len(self._channels[user_id])}")

    async def unregister(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._channels.get(user_id)
            if sockets is not None and websocket in sockets:
                sockets.discard(websocket)
                self._global_count = max(0, self._global_count - 1)
                if not sockets:
                    del self._channels[user_id]
            ws_active_connections.set(self._global_count)
            entitlement_subscribers.set(len(self._channels))

    async def publish(self, user_id: str, message: dict) -> int:
        """
        Send message to every socket subscribed for user_id.

        Returns the number of sockets that received it.
        """
        async with self._lock:
            sockets = self._channels.get(user_id)
            if not sockets:
                return 0
            sockets = sockets.copy()

        event_type = message.get("type") or "unknown"
        delivered = 0
        dead_sockets = []
        for ws in sockets:
            try:
                await ws.send_json(message)
                ws_messages_sent_total.inc(labels={"event_type": str(event_type)})
                delivered += 1
            except Exception as e:
                logger.debug(f"[HUB] Failed to send to socket: {e}")
                dead_sockets.append(ws)

        if dead_sockets:
            for ws in dead_sockets:
                await self.unregister(user_id, ws)
            logger.debug(f"[HUB] Pruned {len(dead_sockets)} dead sockets for user {user_id}")
        return delivered

    async def subscriber_count(self, user_id: Optional[str] = None) -> int:
        async with self._lock:
            if user_id is None:
                return self._global_count
            return len(self._channels.get(user_id, set()))


def change_message(event: str, record: Optional[Dict[str, Any]]) -> dict:
    return {
        "type": "entitlement.changed",
        "event": event,
        "record": record,
        "active": bool(record and record.get("status") == "active"),
        "ts": datetime.now(timezone.utc).isoformat(),
    }


async def publish_entitlement_change(user_id: Optional[str], event: str, record: Optional[Dict[str, Any]]) -> int:
    """Notify a user's live subscribers; never raises."""
    if not user_id:
        return 0
    try:
        return await hub.publish(user_id, change_message(event, record))
    except Exception as e:
        logger.warning(f"[HUB] publish failed for user {user_id}: {e}")
        return 0


# Global singleton hub instance
hub = EntitlementHub()
