"""Shared test fixtures and configuration for backend tests."""
import asyncio

import pytest
from fastapi.testclient import TestClient

from app.auth.service import TokenService
from app.chat.service import ChatService
from app.chat.sessions import Connection
from app.config import AppConfig, ChatSettings
from app.main import create_app
from app.storage import MemoryMessageStore

TEST_SECRET = "test-secret-key-for-socialite-backend-tests"


class FakeTransport:
    """Stands in for a WebSocket: records frames and the close code."""

    def __init__(self, fail_sends: bool = False) -> None:
        self.sent = []
        self.closed_with = None
        self.fail_sends = fail_sends

    async def send_json(self, data: dict) -> None:
        if self.fail_sends:
            raise ConnectionError("transport gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = code

    def of_type(self, frame_type: str) -> list:
        return [f for f in self.sent if f.get("type") == frame_type]


async def settle() -> None:
    """Let writer tasks drain their queues."""
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.fixture
def config() -> AppConfig:
    cfg = AppConfig()
    cfg.storage.backend = "memory"
    cfg.secrets.jwt.secret_key = TEST_SECRET
    return cfg


@pytest.fixture
def store() -> MemoryMessageStore:
    return MemoryMessageStore()


@pytest.fixture
def tokens(config) -> TokenService:
    return TokenService.from_config(config)


@pytest.fixture
def chat_service(store, tokens) -> ChatService:
    """A ChatService with short storage timeouts and no sweep task."""
    return ChatService(
        store,
        tokens,
        ChatSettings(storage_timeout_seconds=0.5, heartbeat_timeout_seconds=30),
    )


@pytest.fixture
def connect(chat_service):
    """Factory: register a FakeTransport-backed connection for a user."""
    async def _connect(user_id: str, queue_size: int = 64) -> Connection:
        connection = Connection(transport=FakeTransport(), queue_size=queue_size)
        await chat_service.presence.connect(connection, user_id)
        return connection
    return _connect


@pytest.fixture
def test_app(config, store):
    return create_app(config, store=store)


@pytest.fixture
def api_client(test_app):
    """Provide a TestClient for a memory-backed app (lifespan included)."""
    with TestClient(test_app) as client:
        yield client


@pytest.fixture
def auth_headers(tokens):
    """Factory: Authorization header for a user id."""
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {tokens.issue(user_id)}"}
    return _headers
