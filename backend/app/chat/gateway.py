"""Gateway between the real-time wire protocol and the chat core.

Each inbound event maps to exactly one call into the registry, membership
index, engine or presence handler. Replies (acks, errors, resync pages) are
queued on the connection's own outbound queue, behind any message frames
already there, so a single writer owns the socket.

Inbound events:
    - auth {token}                  first frame if no ?token= was given
    - join {roomId}                 -> joined {roomId, alreadyMember, lastSequence}
    - leave {roomId}                -> left {roomId}
    - message {roomId, payload, clientId?} -> ack {roomId, sequence, messageId, clientId}
    - resync {roomId, since?}       -> resync {roomId, messages, lastSequence}
    - read {roomId, sequence}       -> read {roomId, sequence}
    - ping                          -> pong

Outbound events pushed by the core:
    - messageReceived {id, roomId, sequence, senderId, payload, createdAt}
    - presence {userId, state, lastSeen}
    - readReceipt {roomId, userId, sequence}
"""
import json
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Union

from .errors import ChatError, InvalidPayload
from .sessions import Connection, ConnectionState

if TYPE_CHECKING:
    from .service import ChatService

logger = logging.getLogger(__name__)

# WebSocket close code for a rejected credential
CLOSE_UNAUTHORIZED = 4401

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[Optional[dict]]]


def _room_id(data: Dict[str, Any]) -> str:
    room_id = data.get("roomId")
    if not isinstance(room_id, str) or not room_id.strip():
        raise InvalidPayload("roomId is required")
    return room_id.strip()


def _int_field(data: Dict[str, Any], name: str, required: bool = True) -> Optional[int]:
    value = data.get(name)
    if value is None and not required:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPayload(f"{name} must be an integer")
    return value


class ChatGateway:
    """Translates wire events into chat-core calls for one service."""

    def __init__(self, service: "ChatService") -> None:
        self.service = service
        self._handlers: Dict[str, Handler] = {
            "join": self._on_join,
            "leave": self._on_leave,
            "message": self._on_message,
            "resync": self._on_resync,
            "read": self._on_read,
            "ping": self._on_ping,
        }

    async def open(self, transport: Any, token: Optional[str]) -> Connection:
        """Authenticate and register a new connection.

        Raises:
            Unauthorized: If the token does not verify. Nothing is registered.
        """
        user_id = self.service.tokens.verify(token)
        connection = Connection(
            transport=transport,
            queue_size=self.service.settings.outbound_queue_size,
        )
        await self.service.presence.connect(connection, user_id)
        connection.deliver({
            "type": "connected",
            "connectionId": connection.id,
            "userId": user_id,
        })
        return connection

    async def dispatch(
        self, connection: Connection, raw: Union[str, bytes, Dict[str, Any]]
    ) -> None:
        """Handle one inbound frame from an open connection."""
        if connection.closed:
            return
        connection.touch()

        event_type = ""
        try:
            data = self._parse(raw)
            event_type = data["type"]
            if connection.state == ConnectionState.CONNECTED:
                raise InvalidPayload("Connection is not authenticated")
            handler = self._handlers.get(event_type)
            if handler is None:
                raise InvalidPayload(f"Unknown event type: {event_type}")
            reply = await handler(connection, data)
        except ChatError as e:
            logger.info(
                f"[WS] {e.code} for {connection.user_id} on {event_type or '?'}: {e.message}"
            )
            reply = e.to_frame(event_type)

        if reply is not None:
            await self.reply(connection, reply)

    async def reply(self, connection: Connection, frame: dict) -> None:
        """Queue a frame for one connection, enforcing the overflow policy."""
        if not connection.deliver(frame) and connection.overflowed:
            await self.service.presence.drop_overflowed(connection)

    async def close(self, connection: Connection, code: int = 1000, reason: str = "") -> None:
        await self.service.presence.disconnect(connection, code=code, reason=reason)

    @staticmethod
    def _parse(raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError:
                raise InvalidPayload("Frame is not valid JSON")
        if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
            raise InvalidPayload("Frame must be an object with a string 'type'")
        return raw

    # -------------------------------------------------------------------------
    # Event handlers
    # -------------------------------------------------------------------------

    async def _on_join(self, connection: Connection, data: Dict[str, Any]) -> dict:
        room_id = _room_id(data)
        result = await self.service.join(room_id, connection.user_id)
        return {"type": "joined", **result.model_dump()}

    async def _on_leave(self, connection: Connection, data: Dict[str, Any]) -> dict:
        room_id = _room_id(data)
        await self.service.leave(room_id, connection.user_id)
        return {"type": "left", "roomId": room_id}

    async def _on_message(self, connection: Connection, data: Dict[str, Any]) -> dict:
        room_id = _room_id(data)
        message = await self.service.engine.send(
            room_id, connection.user_id, data.get("payload")
        )
        return {
            "type": "ack",
            "roomId": room_id,
            "sequence": message.sequence,
            "messageId": message.id,
            "clientId": data.get("clientId"),
        }

    async def _on_resync(self, connection: Connection, data: Dict[str, Any]) -> None:
        room_id = _room_id(data)
        since = _int_field(data, "since", required=False)
        # The engine queues the reply itself, in order with live messages.
        await self.service.engine.resync_to(connection, room_id, since)

    async def _on_read(self, connection: Connection, data: Dict[str, Any]) -> dict:
        room_id = _room_id(data)
        sequence = _int_field(data, "sequence")
        cursor = await self.service.engine.mark_read(room_id, connection.user_id, sequence)
        return {"type": "read", "roomId": room_id, "sequence": cursor}

    async def _on_ping(self, connection: Connection, data: Dict[str, Any]) -> dict:
        return {"type": "pong"}
