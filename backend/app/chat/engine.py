"""Message ordering and delivery engine.

``send`` runs entirely under the room's lock:

    1. check membership
    2. stamp lastSequence + 1 on the new message
    3. persist it (bounded by the storage timeout)
    4. advance the in-memory counter
    5. queue the frame on every live connection of every member

Because steps 2-5 are serialized per room and queuing never blocks, each
recipient's outbound queue holds that room's messages in sequence order.
A failed or timed-out write leaves the counter untouched, so the next send
reuses the same number and the sequence stays gapless. A timed-out write
keeps the lock until the store settles, and is deleted again if it
committed late, so the retry never overwrites a row someone has read.

History reads (``resync``, ``resync_to``) take the same lock and never
return anything past the in-memory counter.

Connections whose queue is full are handed to ``on_overflow`` after the lock
is released (disconnect-and-force-reconnect; clients then resync).
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import urlparse

from pydantic import ValidationError

from app.storage.base import MessageStore

from .errors import InvalidPayload, NotFound, NotMember
from .membership import RoomMembershipIndex, RoomState
from .persistence import call_store, write_store
from .schemas import Message, MessagePayload
from .sessions import Connection, SessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_TEXT_LENGTH = 4000

OverflowHandler = Callable[[Connection], Awaitable[Any]]


class MessageEngine:
    """Assigns sequence numbers, persists, and fans out room messages."""

    def __init__(
        self,
        rooms: RoomMembershipIndex,
        sessions: SessionRegistry,
        store: MessageStore,
        storage_timeout: float = 5.0,
        max_text_length: int = DEFAULT_MAX_TEXT_LENGTH,
    ) -> None:
        self.rooms = rooms
        self.sessions = sessions
        self.store = store
        self.storage_timeout = storage_timeout
        self.max_text_length = max_text_length
        self.on_overflow: Optional[OverflowHandler] = None

    def validate_payload(
        self, payload: Union[MessagePayload, Dict[str, Any], str, None]
    ) -> MessagePayload:
        """Normalize and validate a message payload.

        A bare string is treated as text. At least one of text/mediaUrl must
        be non-blank.

        Raises:
            InvalidPayload: If the payload is empty or malformed.
        """
        if isinstance(payload, str):
            payload = {"text": payload}
        if isinstance(payload, dict):
            try:
                payload = MessagePayload.model_validate(payload)
            except ValidationError as e:
                raise InvalidPayload(f"Malformed payload: {e.errors()[0]['msg']}")
        if not isinstance(payload, MessagePayload):
            raise InvalidPayload("Payload is required")

        text = payload.text if payload.text and payload.text.strip() else None
        media_url = payload.mediaUrl.strip() if payload.mediaUrl else None

        if text is None and not media_url:
            raise InvalidPayload("Message must contain text or media")
        if text is not None and len(text) > self.max_text_length:
            raise InvalidPayload(
                f"Message text exceeds {self.max_text_length} characters"
            )
        if media_url and urlparse(media_url).scheme not in ("http", "https"):
            raise InvalidPayload("mediaUrl must be an http(s) URL")

        return MessagePayload(text=text, mediaUrl=media_url or None)

    async def _member_state(self, room_id: str, user_id: str) -> RoomState:
        try:
            state = await self.rooms.state(room_id)
        except NotFound:
            # Unknown rooms are never created implicitly by a send.
            raise NotMember(f"Not a member of room {room_id}")
        if user_id not in state.room.participants:
            raise NotMember(f"Not a member of room {room_id}")
        return state

    async def send(
        self,
        room_id: str,
        sender_id: str,
        payload: Union[MessagePayload, Dict[str, Any], str, None],
    ) -> Message:
        """Order, persist and deliver a message.

        Returns:
            The persisted message with its sequence number.

        Raises:
            InvalidPayload: Empty or malformed payload.
            NotMember: Sender has not joined the room (or it doesn't exist).
            StorageUnavailable: Persistence failed or timed out; nothing
                was delivered and the sequence did not advance.
        """
        payload = self.validate_payload(payload)
        state = await self._member_state(room_id, sender_id)

        async with state.lock:
            # Membership may have changed while we waited for the lock.
            if sender_id not in state.room.participants:
                raise NotMember(f"Not a member of room {room_id}")

            message = Message(
                roomId=room_id,
                sequence=state.room.lastSequence + 1,
                senderId=sender_id,
                payload=payload,
            )
            await write_store(
                self.store.append_message(room_id, message),
                self.storage_timeout,
                "append_message",
                undo=lambda: self.store.delete_message(room_id, message.sequence),
            )
            state.room = state.room.model_copy(update={"lastSequence": message.sequence})

            frame = {"type": "messageReceived", **message.model_dump()}
            overflowed = self._fan_out(state.room.participants, frame)

        logger.debug(
            f"[Engine] {sender_id} -> {room_id} seq={message.sequence}"
        )
        await self._handle_overflow(overflowed)
        return message

    async def _history(
        self,
        state: RoomState,
        user_id: str,
        since: Optional[int],
        limit: Optional[int],
    ) -> Tuple[int, List[Message]]:
        """Read history for a room whose lock is held.

        Only messages up to the in-memory lastSequence are returned, so a
        row that is still being written never shows up.
        """
        if since is None:
            since = state.read_cursors.get(user_id, 0)
        if since < 0:
            raise InvalidPayload("since must be >= 0")
        messages = await call_store(
            self.store.get_messages_since(state.room.id, since, limit),
            self.storage_timeout,
            "get_messages_since",
        )
        last = state.room.lastSequence
        return since, [m for m in messages if m.sequence <= last]

    async def resync(
        self,
        room_id: str,
        user_id: str,
        since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """Messages with sequence > ``since``, in increasing order.

        When ``since`` is None the user's stored read cursor is used.

        Raises:
            NotMember: Caller has not joined the room.
            InvalidPayload: Negative ``since``.
        """
        state = await self._member_state(room_id, user_id)
        async with state.lock:
            _, messages = await self._history(state, user_id, since, limit)
        return messages

    async def resync_to(
        self,
        connection: Connection,
        room_id: str,
        since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """Queue a ``resync`` reply for the connection's user.

        Live messages for the room are held back on the connection from the
        moment of the call until the reply is queued; held messages already
        covered by the reply are dropped and the rest follow it. The reply is
        queued under the room lock, so the client sees every message of the
        room in increasing sequence order.

        Raises:
            NotMember: Caller has not joined the room.
            InvalidPayload: Negative ``since``.
            StorageUnavailable: History could not be read.
        """
        connection.hold_room(room_id)
        released = False
        try:
            state = await self._member_state(room_id, connection.user_id)
            async with state.lock:
                since, messages = await self._history(
                    state, connection.user_id, since, limit
                )
                connection.deliver({
                    "type": "resync",
                    "roomId": room_id,
                    "messages": [m.model_dump() for m in messages],
                    "lastSequence": state.room.lastSequence,
                })
                after = messages[-1].sequence if messages else since
                connection.release_room(room_id, after=after)
                released = True
        finally:
            if not released:
                connection.release_room(room_id)

        if connection.overflowed:
            await self._handle_overflow([connection])
        return messages

    async def mark_read(self, room_id: str, user_id: str, sequence: int) -> int:
        """Advance the user's read cursor and broadcast a read receipt.

        Returns:
            The user's cursor after the update (never decreases).
        """
        state = await self._member_state(room_id, user_id)
        if sequence < 0 or sequence > state.room.lastSequence:
            raise InvalidPayload(
                f"sequence must be between 0 and {state.room.lastSequence}"
            )
        cursor = max(state.read_cursors.get(user_id, 0), sequence)
        state.read_cursors[user_id] = cursor

        await self.broadcast(
            state.room.participants,
            {"type": "readReceipt", "roomId": room_id, "userId": user_id, "sequence": cursor},
        )
        return cursor

    async def last_sequence(self, room_id: str) -> int:
        state = await self.rooms.state(room_id)
        return state.room.lastSequence

    async def broadcast(
        self,
        user_ids: Iterable[str],
        frame: dict,
        exclude_user: Optional[str] = None,
    ) -> None:
        """Best-effort delivery of an unsequenced frame to users' connections."""
        recipients = [u for u in dict.fromkeys(user_ids) if u != exclude_user]
        await self._handle_overflow(self._fan_out(recipients, frame))

    def _fan_out(self, user_ids: Iterable[str], frame: dict) -> List[Connection]:
        """Queue a frame on every live connection of the given users.

        Returns:
            Connections that refused the frame because their queue was full.
        """
        refused = []
        for user_id in user_ids:
            for connection in self.sessions.connections_for(user_id):
                if not connection.deliver(frame) and connection.overflowed:
                    refused.append(connection)
        return refused

    async def _handle_overflow(self, connections: List[Connection]) -> None:
        for connection in connections:
            logger.warning(
                f"[Engine] Outbound queue full for {connection.id} "
                f"(user {connection.user_id}); disconnecting"
            )
            if self.on_overflow is not None:
                await self.on_overflow(connection)
