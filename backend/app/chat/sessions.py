"""Live connections and the session registry.

A ``Connection`` wraps one transport session (normally a Starlette
WebSocket) together with its bounded outbound queue. A single writer task
drains that queue, so frames reach the client in exactly the order they were
queued and a slow client never blocks the sender.

Connection lifecycle:
    CONNECTED -> AUTHENTICATED -> JOINED{rooms} -> CLOSED

The ``SessionRegistry`` maps user identities to their live connections and
keeps the per-user presence counts in step with (un)registration.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from .errors import NotFound
from .schemas import PresenceState

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    JOINED = "joined"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """One live transport session.

    Attributes:
        transport: Object exposing ``async send_json(dict)`` and
            ``async close(code, reason)``.
        queue_size: Capacity of the outbound queue.
        id: Connection identifier.
        user_id: Owning user identity, set once on authentication.
        rooms: Rooms joined through this connection.
        connected_at: Wall-clock connect time.
        last_seen: Monotonic time of the last inbound frame.
        overflowed: Set when a frame was refused because the queue was full.
    """
    transport: Any
    queue_size: int = DEFAULT_QUEUE_SIZE
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    rooms: Set[str] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.monotonic)
    state: ConnectionState = ConnectionState.CONNECTED
    overflowed: bool = False

    def __post_init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._writer: Optional[asyncio.Task] = None
        # room_id -> open holds, and the messageReceived frames held back
        self._holds: Dict[str, int] = {}
        self._held: Dict[str, List[dict]] = {}

    @property
    def closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    @property
    def pending(self) -> int:
        """Frames queued but not yet written."""
        return self._queue.qsize()

    def authenticate(self, user_id: str) -> None:
        if self.user_id is not None and self.user_id != user_id:
            raise ValueError(
                f"Connection {self.id} already belongs to {self.user_id}"
            )
        self.user_id = user_id
        if self.state == ConnectionState.CONNECTED:
            self.state = ConnectionState.AUTHENTICATED

    def join_room(self, room_id: str) -> None:
        self.rooms.add(room_id)
        if not self.closed:
            self.state = ConnectionState.JOINED

    def leave_room(self, room_id: str) -> None:
        self.rooms.discard(room_id)
        if not self.rooms and self.state == ConnectionState.JOINED:
            self.state = ConnectionState.AUTHENTICATED

    def touch(self, now: Optional[float] = None) -> None:
        """Refresh the liveness timestamp."""
        self.last_seen = time.monotonic() if now is None else now

    def start(self) -> None:
        """Start the writer task that drains the outbound queue."""
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def deliver(self, frame: dict) -> bool:
        """Queue a frame for this connection without blocking.

        Returns:
            True if queued, False if the connection is closed or its queue
            is full. A full queue also sets ``overflowed``, after which every
            further frame is refused so the client never sees a gap.
            Messages for a held room (see ``hold_room``) count as queued.
        """
        if self.closed or self.overflowed:
            return False
        if frame.get("type") == "messageReceived" and frame.get("roomId") in self._held:
            held = self._held[frame["roomId"]]
            if len(held) >= self.queue_size:
                self.overflowed = True
                return False
            held.append(frame)
            return True
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.overflowed = True
            return False
        return True

    def hold_room(self, room_id: str) -> None:
        """Hold back live messages for a room until ``release_room``.

        Used while a resync reply for the room is being built, so that no
        live message overtakes the history the client asked for.
        """
        self._holds[room_id] = self._holds.get(room_id, 0) + 1
        self._held.setdefault(room_id, [])

    def release_room(self, room_id: str, after: int = 0) -> bool:
        """Drop one hold; on the last one, queue held messages newer than ``after``.

        Returns:
            False if a held message was refused because the queue is full.
        """
        remaining = self._holds.get(room_id, 0) - 1
        if remaining > 0:
            self._holds[room_id] = remaining
            return True
        self._holds.pop(room_id, None)
        for frame in self._held.pop(room_id, []):
            if frame["sequence"] > after and not self.deliver(frame):
                return False
        return True

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self.transport.send_json(frame)
            except Exception as e:
                logger.debug(f"Write to connection {self.id} failed: {e}")
                return

    async def close(self, code: int = 1000, reason: str = "") -> bool:
        """Close the transport and cancel pending writes.

        Returns:
            True if this call closed the connection, False if it was
            already closed.
        """
        if self.closed:
            return False
        self.state = ConnectionState.CLOSED
        if self._writer is not None and self._writer is not asyncio.current_task():
            self._writer.cancel()
        try:
            await self.transport.close(code=code, reason=reason)
        except Exception as e:
            # Transport already gone (client hung up first).
            logger.debug(f"Close of connection {self.id} failed: {e}")
        return True


@dataclass
class PresenceRecord:
    """Active-connection count and last-seen time for one user."""
    user_id: str
    connections: int = 0
    last_seen: Optional[float] = None

    @property
    def state(self) -> PresenceState:
        return PresenceState.ONLINE if self.connections > 0 else PresenceState.OFFLINE


class SessionRegistry:
    """Maps user identities to live connections.

    All methods are synchronous, so each one runs atomically on the event
    loop; presence counts change in the same step as the connection maps.
    """

    def __init__(self) -> None:
        # connection_id -> Connection
        self._connections: Dict[str, Connection] = {}

        # user_id -> {connection_id -> Connection}
        self._by_user: Dict[str, Dict[str, Connection]] = {}

        # user_id -> PresenceRecord
        self._presence: Dict[str, PresenceRecord] = {}

    def register(self, connection: Connection, user_id: str) -> bool:
        """Register an authenticated connection for a user.

        Args:
            connection: The connection to register.
            user_id: Identity verified by the authentication collaborator.

        Returns:
            True if this registration took the user from offline to online.
        """
        if connection.id in self._connections:
            raise ValueError(f"Connection {connection.id} is already registered")
        connection.authenticate(user_id)

        self._connections[connection.id] = connection
        self._by_user.setdefault(user_id, {})[connection.id] = connection

        record = self._presence.setdefault(user_id, PresenceRecord(user_id=user_id))
        record.connections += 1
        record.last_seen = time.time()
        logger.debug(
            f"[Sessions] Registered {connection.id} for {user_id} "
            f"({record.connections} active)"
        )
        return record.connections == 1

    def unregister(self, connection_id: str) -> Tuple[Connection, bool]:
        """Remove a connection.

        Returns:
            Tuple of (connection, went_offline).

        Raises:
            NotFound: If the connection is not registered.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            raise NotFound(f"Unknown connection {connection_id}")

        user_id = connection.user_id
        user_connections = self._by_user.get(user_id, {})
        user_connections.pop(connection_id, None)
        if not user_connections:
            self._by_user.pop(user_id, None)

        record = self._presence[user_id]
        record.connections -= 1
        record.last_seen = time.time()
        return connection, record.connections == 0

    def get(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise NotFound(f"Unknown connection {connection_id}")
        return connection

    def connections_for(self, user_id: str) -> Set[Connection]:
        """All live connections owned by a user (empty set if offline)."""
        return set(self._by_user.get(user_id, {}).values())

    def all_connections(self) -> List[Connection]:
        return list(self._connections.values())

    def presence_of(self, user_id: str) -> PresenceRecord:
        return self._presence.get(user_id) or PresenceRecord(user_id=user_id)

    def is_online(self, user_id: str) -> bool:
        return self.presence_of(user_id).state == PresenceState.ONLINE

    def __len__(self) -> int:
        return len(self._connections)
