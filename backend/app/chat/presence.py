"""Presence and disconnection handling.

Per-user state machine:
    Offline -> Online   on the first registered connection
    Online  -> Offline  when the active-connection count drops to zero

Transitions are announced to everyone sharing a room with the user
(best-effort, unsequenced). Connections that stop sending frames for longer
than the heartbeat timeout are swept and disconnected exactly as an
explicit close would be.
"""
import asyncio
import logging
import time
from typing import List, Optional

from .engine import MessageEngine
from .errors import NotFound, StorageUnavailable
from .membership import RoomMembershipIndex
from .schemas import PresenceState
from .sessions import Connection, SessionRegistry

logger = logging.getLogger(__name__)

# WebSocket close codes (4000-4999 are application-defined)
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_HEARTBEAT_TIMEOUT = 4000
CLOSE_BACKPRESSURE = 4008


class PresenceHandler:
    """Registers/unregisters connections and announces presence changes."""

    def __init__(
        self,
        sessions: SessionRegistry,
        rooms: RoomMembershipIndex,
        engine: MessageEngine,
        heartbeat_timeout: float = 60.0,
        sweep_interval: float = 15.0,
    ) -> None:
        self.sessions = sessions
        self.rooms = rooms
        self.engine = engine
        self.heartbeat_timeout = heartbeat_timeout
        self.sweep_interval = sweep_interval

    async def connect(self, connection: Connection, user_id: str) -> None:
        """Register an authenticated connection and start its writer."""
        came_online = self.sessions.register(connection, user_id)
        connection.start()
        logger.info(f"[Presence] {user_id} connected via {connection.id}")
        if came_online:
            await self._announce(user_id, PresenceState.ONLINE)

    async def disconnect(
        self, connection: Connection, code: int = CLOSE_NORMAL, reason: str = ""
    ) -> bool:
        """Close and unregister a connection. Safe to call more than once.

        Returns:
            True if this call unregistered the connection.
        """
        await connection.close(code=code, reason=reason)
        try:
            _, went_offline = self.sessions.unregister(connection.id)
        except NotFound:
            return False

        logger.info(
            f"[Presence] {connection.user_id} disconnected {connection.id} "
            f"(code={code}{', ' + reason if reason else ''})"
        )
        if went_offline:
            await self._announce(connection.user_id, PresenceState.OFFLINE)
        return True

    async def drop_overflowed(self, connection: Connection) -> None:
        """Backpressure policy: force the client to reconnect and resync."""
        await self.disconnect(
            connection, code=CLOSE_BACKPRESSURE, reason="outbound queue overflow"
        )

    async def sweep(self, now: Optional[float] = None) -> List[Connection]:
        """Disconnect every connection silent for longer than the timeout.

        Args:
            now: Monotonic time to compare against (defaults to now).

        Returns:
            The connections that were disconnected.
        """
        now = time.monotonic() if now is None else now
        expired = [
            conn for conn in self.sessions.all_connections()
            if now - conn.last_seen > self.heartbeat_timeout
        ]
        for conn in expired:
            logger.warning(
                f"[Presence] Heartbeat timeout for {conn.id} (user {conn.user_id})"
            )
            await self.disconnect(
                conn, code=CLOSE_HEARTBEAT_TIMEOUT, reason="heartbeat timeout"
            )
        return expired

    async def run(self) -> None:
        """Liveness loop; runs until cancelled."""
        logger.info(
            f"[Presence] Liveness sweep every {self.sweep_interval}s "
            f"(timeout {self.heartbeat_timeout}s)"
        )
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("[Presence] Liveness sweep failed")

    def state_of(self, user_id: str) -> PresenceState:
        return self.sessions.presence_of(user_id).state

    async def _announce(self, user_id: str, state: PresenceState) -> None:
        """Tell everyone sharing a room with the user about a transition."""
        try:
            rooms = await self.rooms.rooms_for(user_id)
        except StorageUnavailable:
            logger.warning(f"[Presence] Could not load rooms for {user_id}; skipping {state.value}")
            return

        peers = {member for room in rooms for member in room.participants}
        record = self.sessions.presence_of(user_id)
        await self.engine.broadcast(
            sorted(peers),
            {
                "type": "presence",
                "userId": user_id,
                "state": state.value,
                "lastSeen": record.last_seen,
            },
            exclude_user=user_id,
        )
