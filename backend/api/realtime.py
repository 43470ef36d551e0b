"""
backend/api/realtime.py
WebSocket endpoint for live entitlement updates.

Implements /v1/ws/entitlement with Supabase JWT + X-User-Id auth.
Read-only socket; purchases change only through the webhook.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool
from datetime import datetime, timezone
from uuid import uuid4
import logging
import json

from backend.realtime.hub import hub
from backend.core.auth import identity_from_headers
from backend.core.logging import log_event
from backend.features.entitlements.service import get_entitlement

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/v1/ws/entitlement")
async def entitlement_socket(websocket: WebSocket):
    """
    Live entitlement subscription for the authenticated caller.

    Auth Methods:
    1. Authorization: Bearer <Supabase JWT>
    2. X-User-Id: <user_id> (only while JWT verification is not configured)

    Events Emitted:
    - entitlement.snapshot (on connect)
    - entitlement.changed (event INSERT or UPDATE)

    Client Behavior:
    - Send {"type": "ping"} to keep alive
    - Re-fetch and resubscribe after reconnect
    """
    await websocket.accept()
    request_id = websocket.headers.get("x-request-id") or str(uuid4())
    connection_id = str(uuid4())

    user_id = _authenticate_websocket(websocket)
    if not user_id:
        log_event("info", "ws.unauthorized", request_id=request_id, event_type="ws.unauthorized", extra={"connection_id": connection_id})
        await _reject_and_close(websocket, request_id, "forbidden", "Unauthorized: missing or invalid authentication")
        return

    await hub.register(user_id, websocket)
    log_event("info", "ws.connected", request_id=request_id, user_id=user_id, event_type="ws.connected", extra={"connection_id": connection_id})

    try:
        status = await run_in_threadpool(get_entitlement, user_id)
        await websocket.send_json({
            "type": "entitlement.snapshot",
            "user_id": user_id,
            "active": status.active,
            "record": status.record,
            "ts": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id,
        })

        while True:
            raw_message = await websocket.receive_text()
            try:
                data = json.loads(raw_message)
            except ValueError as e:
                log_event("debug", "ws.invalid_json", request_id=request_id, user_id=user_id, event_type="ws.invalid_json", extra={"error": str(e)})
                continue

            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({
                    "type": "pong",
                    "ts": datetime.now(timezone.utc).isoformat(),
                    "request_id": request_id,
                })
    except WebSocketDisconnect:
        log_event("info", "ws.disconnected", request_id=request_id, user_id=user_id, event_type="ws.disconnected", extra={"connection_id": connection_id})
    except Exception as e:
        log_event("error", "ws.loop_error", request_id=request_id, user_id=user_id, event_type="ws.loop_error", extra={"error": str(e), "connection_id": connection_id})
    finally:
        await hub.unregister(user_id, websocket)


def _authenticate_websocket(websocket: WebSocket) -> str | None:
    try:
        identity = identity_from_headers(websocket.headers)
    except Exception as e:
        # Invalid or expired token
        logger.debug(f"[WS] JWT validation failed: {e}")
        return None
    return identity.user_id if identity else None


async def _reject_and_close(websocket: WebSocket, request_id: str, code: str, message: str):
    try:
        await websocket.send_json({
            "type": "error",
            "code": code,
            "message": message,
            "request_id": request_id,
        })
        await websocket.close(code=1008, reason=message)
    except Exception as e:
        logger.debug(f"[WS] close failed: {e}")
