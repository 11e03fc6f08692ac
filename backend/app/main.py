"""Socialite Backend Application.

This is the main entry point for the Socialite backend service: the
real-time chat core plus the REST surface around it.

Modules:
    - chat: WebSocket gateway, room membership, ordered delivery, presence
    - storage: Room and message persistence (DuckDB or in-memory)
    - auth: Bearer-token verification
    - media: Image uploads to the external media host
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.auth.router import router as auth_router
from app.auth.service import TokenService
from app.chat.chats_router import router as chats_router
from app.chat.errors import ChatError
from app.chat.messages_router import router as messages_router
from app.chat.router import router as chat_router
from app.chat.service import ChatService, build_store
from app.config import AppConfig, get_config
from app.media.router import router as media_router
from app.media.service import MediaHostClient
from app.storage import MessageStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "same-origin",
}


def create_app(
    config: Optional[AppConfig] = None,
    store: Optional[MessageStore] = None,
) -> FastAPI:
    """Build the FastAPI application and its ChatService.

    Args:
        config: Configuration to use (defaults to ``get_config()``).
        store: Storage backend override (defaults to the configured one).
    """
    config = config or get_config()
    tokens = TokenService.from_config(config)
    chat = ChatService(store or build_store(config), tokens, config.chat)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in socialite.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        await chat.start()
        logger.info(
            f"Chat service started (storage={config.storage.backend}, "
            f"media={'on' if app.state.media else 'off'})"
        )

        yield  # Application runs here

        await chat.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Socialite API",
        description="Backend service for Socialite - posts, profiles and real-time chat",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.tokens = tokens
    app.state.chat = chat
    app.state.media = MediaHostClient.from_config(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_methods=["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        return JSONResponse(
            {"error": exc.code, "detail": exc.message},
            status_code=exc.status_code,
        )

    # Register all routers
    app.include_router(chat_router)
    app.include_router(chats_router)
    app.include_router(messages_router)
    app.include_router(auth_router)
    app.include_router(media_router)

    @app.get("/")
    async def welcome() -> dict:
        return {"message": "welcome"}

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok", "connections": len(chat.sessions)}

    return app


app = create_app()
