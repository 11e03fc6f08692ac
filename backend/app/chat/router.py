"""Chat router providing the real-time WebSocket endpoint.

This module provides:
    - WebSocket /ws/chat: Real-time chat messaging

Protocol Flow:
    1. Client connects with ?token=<jwt>, or sends {type: "auth", token}
       as its first frame within the auth timeout.
       → Server sends: {type: "connected", connectionId, userId}
       → Bad token: {type: "error", code: "Unauthorized"} then close(4401)
    2. Client sends: {type: "join", roomId}
       → Server sends: {type: "joined", roomId, alreadyMember, lastSequence}
    3. Client sends: {type: "message", roomId, payload: {text, mediaUrl}}
       → Every member connection receives {type: "messageReceived", ...}
       → Sender receives {type: "ack", roomId, sequence, messageId}
    4. Client sends: {type: "resync", roomId, since}
       → Server sends: {type: "resync", roomId, messages: [...], lastSequence}
    5. Client sends: {type: "ping"} at least once per heartbeat timeout
       → Server sends: {type: "pong"}
    6. On disconnect → peers receive {type: "presence", state: "offline"}
       once the user's last connection is gone.

See gateway.py for the complete event list.
"""
import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from .errors import Unauthorized
from .gateway import CLOSE_UNAUTHORIZED
from .service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _await_auth_frame(websocket: WebSocket, timeout: float) -> Optional[str]:
    """Read the first frame and extract its token.

    Raises:
        Unauthorized: If the frame is missing, late, or not an auth event.
    """
    try:
        raw = await asyncio.wait_for(websocket.receive_text(), timeout=timeout)
    except asyncio.TimeoutError:
        raise Unauthorized("Authentication timed out")
    try:
        data = json.loads(raw)
    except ValueError:
        raise Unauthorized("Expected an auth frame")
    if not isinstance(data, dict) or data.get("type") != "auth":
        raise Unauthorized("Expected an auth frame")
    return data.get("token")


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Access token (JWT)"),
) -> None:
    """WebSocket endpoint for real-time chat.

    One coroutine per connection reads frames and hands each to the gateway;
    the connection's writer task sends everything outbound.

    Args:
        websocket: The WebSocket connection.
        token: Optional access token; otherwise the first frame must carry it.
    """
    service: ChatService = websocket.app.state.chat
    gateway = service.gateway
    await websocket.accept()

    try:
        if token is None:
            token = await _await_auth_frame(websocket, service.settings.auth_timeout_seconds)
        connection = await gateway.open(websocket, token)
    except Unauthorized as e:
        logger.warning(f"[WS] Rejected connection: {e.message}")
        await websocket.send_json(e.to_frame("auth"))
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return
    except WebSocketDisconnect:
        return

    logger.info(
        f"[WS] Connection {connection.id} accepted for user {connection.user_id}. "
        f"{len(service.sessions)} live connections"
    )

    try:
        while not connection.closed:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await gateway.dispatch(connection, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await gateway.close(connection)
