"""MessageStore abstract interface for the document storage collaborator.

The chat core only talks to storage through this interface. Every call may
suspend on I/O; the caller bounds it with a timeout and maps any failure to
``StorageUnavailable``.

Usage:
    store = DuckDBMessageStore(db_path="socialite.duckdb")
    await store.upsert_room(room)
    await store.append_message(room.id, message)
    newer = await store.get_messages_since(room.id, 3)
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from app.chat.schemas import Message, Room


class StoreError(Exception):
    """Raised by store implementations when a read or write fails."""


class MessageStore(ABC):
    """Abstract base class for room and message persistence."""

    @abstractmethod
    async def append_message(self, room_id: str, message: Message) -> None:
        """Persist a message and advance the room's stored lastSequence.

        A row with the same (room_id, sequence) is replaced.
        """

    @abstractmethod
    async def delete_message(self, room_id: str, sequence: int) -> None:
        """Remove one message, used to revert a write that committed late.

        If it was the room's newest message, the stored lastSequence moves
        back to ``sequence - 1``.
        """

    @abstractmethod
    async def get_messages_since(
        self, room_id: str, sequence: int, limit: Optional[int] = None
    ) -> List[Message]:
        """Return messages with sequence > ``sequence`` in increasing order."""

    @abstractmethod
    async def upsert_room(self, room: Room) -> None:
        """Create or replace a room document."""

    @abstractmethod
    async def delete_room(self, room_id: str) -> None:
        """Remove a room document and its participants."""

    @abstractmethod
    async def get_room(self, room_id: str) -> Optional[Room]:
        """Return the room document, or None if it was never created."""

    @abstractmethod
    async def list_rooms_for_user(self, user_id: str) -> List[Room]:
        """Return every room the user participates in."""

    def close(self) -> None:
        """Release resources held by the store."""
