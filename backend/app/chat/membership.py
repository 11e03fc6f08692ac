"""Room membership index.

Keeps one ``RoomState`` per existing room touched since startup. The
state's lock is the single-writer discipline for that room: membership
changes and the sequence counter (see engine.py) are only mutated while it
is held. Room documents are loaded lazily from the store and every change
is persisted before it becomes visible in memory.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional, Set

from app.storage.base import MessageStore

from .errors import InvalidPayload, NotAuthorized, NotFound
from .persistence import call_store, write_store
from .schemas import MembershipResult, Room

logger = logging.getLogger(__name__)

# (room, user_id) -> may the user join?
JoinPolicy = Callable[[Room, str], bool]


def default_join_policy(room: Room, user_id: str) -> bool:
    """Public rooms are open; private rooms admit the creator and invitees."""
    if not room.isPrivate:
        return True
    return user_id == room.createdBy or user_id in room.invited


@dataclass(eq=False)
class RoomState:
    """In-memory view of one room plus its writer lock.

    Attributes:
        room: Latest persisted room document.
        persisted: False until the room has been written to the store.
        read_cursors: user_id -> highest sequence the user acknowledged.
    """
    room: Room
    persisted: bool = True
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    read_cursors: Dict[str, int] = field(default_factory=dict)


class RoomMembershipIndex:
    """Maps room identifiers to their participant sets.

    Only rooms that exist in the store are cached; lookups of unknown rooms
    go back to the store every time. A placeholder for a room being created
    lives in the cache only while its first write is in flight.
    """

    def __init__(
        self,
        store: MessageStore,
        join_policy: JoinPolicy = default_join_policy,
        storage_timeout: float = 5.0,
    ) -> None:
        self._store = store
        self._join_policy = join_policy
        self._storage_timeout = storage_timeout
        self._rooms: Dict[str, RoomState] = {}
        # room_id -> lock serializing the first load of that room
        self._load_locks: Dict[str, asyncio.Lock] = {}

    async def state(self, room_id: str, create: bool = False) -> RoomState:
        """Return the room's state, loading it from the store on first use.

        Args:
            room_id: Room to look up.
            create: Return an unpersisted placeholder instead of raising
                when the room does not exist.

        Raises:
            NotFound: If the room does not exist and ``create`` is False.
            StorageUnavailable: If the store could not be read.
        """
        state = self._rooms.get(room_id)
        if state is None:
            state = await self._load(room_id)

        if state is None:
            if not create:
                raise NotFound(f"Room {room_id} does not exist")
            state = self._rooms.setdefault(
                room_id, RoomState(room=Room(id=room_id), persisted=False)
            )
        elif not state.persisted and not create:
            raise NotFound(f"Room {room_id} does not exist")
        return state

    async def _load(self, room_id: str) -> Optional[RoomState]:
        lock = self._load_locks.setdefault(room_id, asyncio.Lock())
        try:
            async with lock:
                state = self._rooms.get(room_id)
                if state is None:
                    room = await call_store(
                        self._store.get_room(room_id), self._storage_timeout, "get_room"
                    )
                    if room is not None:
                        state = self._rooms.setdefault(room_id, RoomState(room=room))
                return state
        finally:
            if self._load_locks.get(room_id) is lock:
                del self._load_locks[room_id]

    @asynccontextmanager
    async def _locked(self, room_id: str) -> AsyncIterator[RoomState]:
        """Hold the lock of the room's cached state, creating a placeholder if needed.

        A placeholder that is still unpersisted on exit is dropped from the
        cache.
        """
        while True:
            state = await self.state(room_id, create=True)
            await state.lock.acquire()
            if self._rooms.get(room_id) is state:
                break
            # Placeholder was dropped while we waited
            state.lock.release()
        try:
            yield state
        finally:
            if not state.persisted and self._rooms.get(room_id) is state:
                del self._rooms[room_id]
            state.lock.release()

    async def _write_room(self, state: RoomState, updated: Room) -> None:
        """Persist a new room document for a state whose lock is held."""
        previous = state.room if state.persisted else None

        async def undo() -> None:
            if previous is None:
                await self._store.delete_room(updated.id)
            else:
                await self._store.upsert_room(previous)

        await write_store(
            self._store.upsert_room(updated), self._storage_timeout, "upsert_room", undo
        )
        state.room = updated
        state.persisted = True

    async def create(self, room: Room) -> Room:
        """Create a room from a full document; the creator becomes its first member.

        Raises:
            InvalidPayload: If a room with this id already exists.
        """
        async with self._locked(room.id) as state:
            if state.persisted:
                raise InvalidPayload(f"Room {room.id} already exists")
            participants = [room.createdBy] if room.createdBy else []
            created = room.model_copy(
                update={"participants": participants, "lastSequence": 0}
            )
            await self._write_room(state, created)
        logger.info(f"[Rooms] Created room {room.id} (private={room.isPrivate})")
        return created.model_copy(deep=True)

    async def join(self, room_id: str, user_id: str) -> MembershipResult:
        """Add a user to a room, creating the room if it does not exist.

        Re-joining is a no-op that still succeeds.

        Raises:
            NotAuthorized: If the join policy rejects the user.
            StorageUnavailable: If the membership change could not be persisted.
        """
        async with self._locked(room_id) as state:
            room = state.room
            if user_id in room.participants:
                return MembershipResult(
                    roomId=room_id, alreadyMember=True, lastSequence=room.lastSequence
                )

            if state.persisted and not self._join_policy(room, user_id):
                logger.warning(f"[Rooms] {user_id} not permitted to join {room_id}")
                raise NotAuthorized(f"Not permitted to join room {room_id}")

            updates = {"participants": [*room.participants, user_id]}
            if not state.persisted:
                updates["createdBy"] = user_id
            updated = room.model_copy(update=updates)
            await self._write_room(state, updated)

        logger.info(f"[Rooms] {user_id} joined {room_id}")
        return MembershipResult(
            roomId=room_id, alreadyMember=False, lastSequence=updated.lastSequence
        )

    async def leave(self, room_id: str, user_id: str) -> None:
        """Remove a user from a room. The room and its history remain.

        Raises:
            NotFound: If the room does not exist.
        """
        state = await self.state(room_id)
        async with state.lock:
            room = state.room
            if user_id not in room.participants:
                return
            updated = room.model_copy(
                update={"participants": [p for p in room.participants if p != user_id]}
            )
            await self._write_room(state, updated)
            state.read_cursors.pop(user_id, None)
        logger.info(f"[Rooms] {user_id} left {room_id}")

    async def members_of(self, room_id: str) -> Set[str]:
        """Current participant set of a room.

        Raises:
            NotFound: If the room does not exist.
        """
        state = await self.state(room_id)
        return set(state.room.participants)

    async def get(self, room_id: str) -> Room:
        """Copy of the room document."""
        state = await self.state(room_id)
        return state.room.model_copy(deep=True)

    async def rooms_for(self, user_id: str) -> List[Room]:
        """Rooms the user participates in, as persisted."""
        return await call_store(
            self._store.list_rooms_for_user(user_id),
            self._storage_timeout,
            "list_rooms_for_user",
        )
