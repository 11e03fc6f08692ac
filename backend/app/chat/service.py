"""Chat service composition.

One ``ChatService`` per application owns the session registry, membership
index, message engine, presence handler and gateway. ``create_app()``
stores it on ``app.state.chat``; handlers reach it through
``get_chat_service`` rather than a module-level singleton.
"""
import asyncio
import logging
from typing import Optional

from starlette.requests import HTTPConnection

from app.auth.service import TokenService
from app.config import AppConfig, ChatSettings
from app.storage import DuckDBMessageStore, MemoryMessageStore, MessageStore

from .engine import MessageEngine
from .gateway import ChatGateway
from .membership import JoinPolicy, RoomMembershipIndex, default_join_policy
from .schemas import MembershipResult
from .presence import CLOSE_GOING_AWAY, PresenceHandler
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)


def build_store(config: AppConfig) -> MessageStore:
    """Create the configured storage backend."""
    if config.storage.backend == "memory":
        logger.warning("Using in-memory message store; history is lost on restart")
        return MemoryMessageStore()
    return DuckDBMessageStore(db_path=config.storage.db_path)


class ChatService:
    """Wires the chat core components together."""

    def __init__(
        self,
        store: MessageStore,
        tokens: TokenService,
        settings: Optional[ChatSettings] = None,
        join_policy: JoinPolicy = default_join_policy,
    ) -> None:
        self.settings = settings or ChatSettings()
        self.store = store
        self.tokens = tokens

        self.sessions = SessionRegistry()
        self.rooms = RoomMembershipIndex(
            store,
            join_policy=join_policy,
            storage_timeout=self.settings.storage_timeout_seconds,
        )
        self.engine = MessageEngine(
            self.rooms,
            self.sessions,
            store,
            storage_timeout=self.settings.storage_timeout_seconds,
            max_text_length=self.settings.max_text_length,
        )
        self.presence = PresenceHandler(
            self.sessions,
            self.rooms,
            self.engine,
            heartbeat_timeout=self.settings.heartbeat_timeout_seconds,
            sweep_interval=self.settings.heartbeat_sweep_interval_seconds,
        )
        self.engine.on_overflow = self.presence.drop_overflowed
        self.gateway = ChatGateway(self)
        self._monitor: Optional[asyncio.Task] = None

    async def join(self, room_id: str, user_id: str) -> MembershipResult:
        """Join a room and mark it joined on every live connection of the user."""
        result = await self.rooms.join(room_id, user_id)
        for connection in self.sessions.connections_for(user_id):
            connection.join_room(room_id)
        return result

    async def leave(self, room_id: str, user_id: str) -> None:
        """Leave a room and drop it from every live connection of the user."""
        await self.rooms.leave(room_id, user_id)
        for connection in self.sessions.connections_for(user_id):
            connection.leave_room(room_id)

    async def start(self) -> None:
        """Start the liveness sweep."""
        if self._monitor is None:
            self._monitor = asyncio.create_task(self.presence.run())

    async def stop(self) -> None:
        """Stop the sweep, close every live connection, release the store."""
        if self._monitor is not None:
            self._monitor.cancel()
            try:
                await self._monitor
            except asyncio.CancelledError:
                pass
            self._monitor = None

        for connection in self.sessions.all_connections():
            await self.presence.disconnect(
                connection, code=CLOSE_GOING_AWAY, reason="server shutdown"
            )
        self.store.close()
        logger.info("Chat service stopped")


def get_chat_service(conn: HTTPConnection) -> ChatService:
    """FastAPI dependency returning the application's ChatService."""
    return conn.app.state.chat
