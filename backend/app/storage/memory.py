"""In-memory MessageStore.

Keeps deep copies of every document so callers can never mutate stored
state by accident. Supports failure injection and artificial latency, which
the tests use to exercise the StorageUnavailable paths.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from app.chat.schemas import Message, Room

from .base import MessageStore, StoreError

logger = logging.getLogger(__name__)


class MemoryMessageStore(MessageStore):
    """Dict-backed store.

    Attributes:
        delay: Seconds every call sleeps before running.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self._rooms: Dict[str, Room] = {}
        # room_id -> {sequence -> Message}
        self._messages: Dict[str, Dict[int, Message]] = defaultdict(dict)
        # operation name -> remaining forced failures
        self._failures: Dict[str, int] = defaultdict(int)

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise StoreError."""
        self._failures[operation] += times

    async def _enter(self, operation: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self._failures[operation] > 0:
            self._failures[operation] -= 1
            raise StoreError(f"injected failure in {operation}")

    async def append_message(self, room_id: str, message: Message) -> None:
        await self._enter("append_message")
        self._messages[room_id][message.sequence] = message
        room = self._rooms.get(room_id) or Room(id=room_id)
        room = room.model_copy(
            update={"lastSequence": max(room.lastSequence, message.sequence)}
        )
        self._rooms[room_id] = room

    async def delete_message(self, room_id: str, sequence: int) -> None:
        await self._enter("delete_message")
        self._messages[room_id].pop(sequence, None)
        room = self._rooms.get(room_id)
        if room is not None and room.lastSequence == sequence:
            self._rooms[room_id] = room.model_copy(update={"lastSequence": sequence - 1})

    async def get_messages_since(
        self, room_id: str, sequence: int, limit: Optional[int] = None
    ) -> List[Message]:
        await self._enter("get_messages_since")
        stored = self._messages.get(room_id, {})
        result = [stored[seq] for seq in sorted(stored) if seq > sequence]
        if limit is not None:
            result = result[:limit]
        return result

    async def upsert_room(self, room: Room) -> None:
        await self._enter("upsert_room")
        self._rooms[room.id] = room.model_copy(deep=True)

    async def delete_room(self, room_id: str) -> None:
        await self._enter("delete_room")
        self._rooms.pop(room_id, None)

    async def get_room(self, room_id: str) -> Optional[Room]:
        await self._enter("get_room")
        room = self._rooms.get(room_id)
        return room.model_copy(deep=True) if room else None

    async def list_rooms_for_user(self, user_id: str) -> List[Room]:
        await self._enter("list_rooms_for_user")
        return [
            room.model_copy(deep=True)
            for room_id, room in sorted(self._rooms.items())
            if user_id in room.participants
        ]

    def message_count(self, room_id: str) -> int:
        """Number of stored messages in a room."""
        return len(self._messages.get(room_id, {}))
