"""Messages REST API router.

Endpoints:
    POST /api/v1/messages/{room_id} - Send a message (same path as a WebSocket send)
    GET  /api/v1/messages/{room_id} - Messages after a sequence number, ascending
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from app.auth.dependencies import get_current_user

from .schemas import Message, MessagePage, MessageSend
from .service import ChatService, get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/messages", tags=["messages"])

# Maximum page size to prevent abuse
MAX_PAGE_SIZE = 500


@router.post("/{room_id}", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(
    room_id: str,
    request: MessageSend,
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> Message:
    """Send a message to a room.

    The message is sequenced, persisted and delivered to live connections
    before this returns.
    """
    return await service.engine.send(room_id, user_id, request.model_dump())


@router.get("/{room_id}", response_model=MessagePage)
async def get_messages(
    room_id: str,
    since: Optional[int] = Query(
        None, ge=0, description="Return messages with a greater sequence; defaults to the read cursor"
    ),
    limit: Optional[int] = Query(None, ge=1, le=MAX_PAGE_SIZE, description="Maximum messages to return"),
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> MessagePage:
    """Resync: messages after ``since`` in increasing sequence order."""
    messages = await service.engine.resync(room_id, user_id, since, limit)
    return MessagePage(
        roomId=room_id,
        messages=messages,
        lastSequence=await service.engine.last_sequence(room_id),
    )
