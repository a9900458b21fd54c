"""
Talk Gateway: Metered Call WebSocket
====================================

    WS /ws/talk?token=<access token>

Inbound frames (JSON objects with a "type" key):
    {"type": "start"}   begin metering (expiry is checked first)
    {"type": "end"}     stop metering; always answered with ended/user-ended
    {"type": "ping"}    answered with {"type": "pong"}

Outbound frames:
    {"type": "started",  "seconds": N}
    {"type": "progress", "seconds": N}
    {"type": "ended",    "reason": "time-up" | "user-ended"}
    {"type": "error",    "message": str}

Close codes:
    4001  missing / invalid / revoked token
    4003  account suspended

A dropped connection ends the session it started (server-side, no frame).
A session started from another connection of the same user is left alone.

Phase: ST-06 - Transport
"""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.auth.access_tokens import get_current_user_ws
from app.config import settings
from app.core.async_utils import run_sync
from app.core.errors import SelfTalkError
from app.core.log_middleware import talk_connection_context
from app.services.metering_engine import MeteringEngine, error_event
from app.services.subscription_service import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)

router = APIRouter()

WS_CLOSE_UNAUTHORIZED = 4001
WS_CLOSE_SUSPENDED = 4003

MSG_INVALID_JSON = "Invalid JSON"
MSG_INVALID_FRAME = "Message must be a JSON object with a 'type' field"
MSG_TOO_LARGE = "Message too large"
MSG_UNKNOWN_TYPE = "Unknown message type"


# ---------------------------------------------------------------------------
# WebSocketSendError + safe_send_json
# ---------------------------------------------------------------------------

class WebSocketSendError(Exception):
    """Raised when a WebSocket send fails or times out."""


async def safe_send_json(ws: WebSocket, data: dict, timeout: float = 10.0) -> None:
    """Send JSON over WebSocket with timeout. Closes socket on failure."""
    try:
        await asyncio.wait_for(ws.send_json(data), timeout)
    except (asyncio.TimeoutError, Exception) as exc:
        try:
            await ws.close(code=1011)
        except Exception:
            pass
        raise WebSocketSendError(f"send failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------

@router.websocket("/ws/talk")
async def talk_websocket(websocket: WebSocket):
    await websocket.accept()

    user = await get_current_user_ws(websocket)
    if user is None:
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason="Unauthorized")
        return
    if user.is_suspended:
        await websocket.close(code=WS_CLOSE_SUSPENDED, reason="Account suspended")
        return

    engine: MeteringEngine = websocket.app.state.metering_engine
    lifecycle: SubscriptionLifecycleManager = websocket.app.state.lifecycle

    async def sink(event: dict) -> None:
        await safe_send_json(websocket, event)

    with talk_connection_context(user.user_id) as connection_id:
        logger.info("talk_ws_connected", extra={"user_id": user.user_id, "connection_id": connection_id})
        try:
            while True:
                raw = await websocket.receive_text()

                if len(raw.encode("utf-8")) > settings.max_ws_payload_bytes:
                    await safe_send_json(websocket, error_event(MSG_TOO_LARGE))
                    continue

                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    await safe_send_json(websocket, error_event(MSG_INVALID_JSON))
                    continue

                if not isinstance(message, dict) or not isinstance(message.get("type"), str):
                    await safe_send_json(websocket, error_event(MSG_INVALID_FRAME))
                    continue

                msg_type = message["type"]

                if msg_type == "start":
                    await run_sync(_apply_expiry, lifecycle, user.user_id)
                    await engine.start_session(user.user_id, connection_id, sink)
                elif msg_type == "end":
                    await engine.end_session(user.user_id, sink)
                elif msg_type == "ping":
                    await safe_send_json(websocket, {"type": "pong"})
                else:
                    await safe_send_json(websocket, error_event(MSG_UNKNOWN_TYPE))

        except WebSocketDisconnect:
            logger.info("talk_ws_disconnected", extra={"user_id": user.user_id, "connection_id": connection_id})
        except WebSocketSendError:
            logger.info("talk_ws_send_failed", extra={"user_id": user.user_id, "connection_id": connection_id})
        finally:
            await engine.handle_disconnect(user.user_id, connection_id)


def _apply_expiry(lifecycle: SubscriptionLifecycleManager, user_id: str) -> None:
    """Expire the cycle before metering starts. Runs in a worker thread; failures never block the start."""
    try:
        result = lifecycle.check_and_apply_expiry(user_id)
        if result.expired:
            logger.info("talk_ws_subscription_expired", extra={"user_id": user_id})
    except SelfTalkError as exc:
        # No subscription: the engine answers with the proper error event.
        logger.debug("talk_ws_expiry_skipped", extra={"user_id": user_id, "error.code": exc.code})
    except Exception:
        logger.exception("talk_ws_expiry_check_failed", extra={"user_id": user_id})
