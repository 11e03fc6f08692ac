"""Chats REST API router.

Endpoints:
    POST /api/v1/chats                   - Create a chat (creator joins it)
    GET  /api/v1/chats                   - List the caller's chats
    GET  /api/v1/chats/{room_id}         - Get a chat (members only)
    POST /api/v1/chats/{room_id}/join    - Join (idempotent)
    POST /api/v1/chats/{room_id}/leave   - Leave
    GET  /api/v1/chats/{room_id}/members - Participants with presence
"""
import logging
import uuid
from typing import List

from fastapi import APIRouter, Depends, status

from app.auth.dependencies import get_current_user

from .errors import NotMember
from .schemas import ChatCreate, MembershipResult, Room
from .service import ChatService, get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/chats", tags=["chats"])


@router.post("", response_model=Room, status_code=status.HTTP_201_CREATED)
async def create_chat(
    request: ChatCreate,
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> Room:
    """Create a chat. The caller becomes its first participant.

    Args:
        request: Chat options. A roomId is generated when omitted.

    Returns:
        The persisted room document.
    """
    room = Room(
        id=request.roomId or str(uuid.uuid4()),
        name=request.name,
        isPrivate=request.isPrivate,
        invited=list(dict.fromkeys(request.invited)),
        createdBy=user_id,
    )
    created = await service.rooms.create(room)
    logger.info(f"Chat {created.id} created by {user_id}")
    return created


@router.get("", response_model=List[Room])
async def list_chats(
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> List[Room]:
    """List the chats the caller participates in."""
    return await service.rooms.rooms_for(user_id)


@router.get("/{room_id}", response_model=Room)
async def get_chat(
    room_id: str,
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> Room:
    """Get a chat document. Only members may read it."""
    room = await service.rooms.get(room_id)
    if user_id not in room.participants:
        raise NotMember(f"Not a member of room {room_id}")
    return room


@router.post("/{room_id}/join", response_model=MembershipResult)
async def join_chat(
    room_id: str,
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> MembershipResult:
    """Join a chat, creating it if it doesn't exist."""
    return await service.join(room_id, user_id)


@router.post("/{room_id}/leave")
async def leave_chat(
    room_id: str,
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> dict:
    """Leave a chat. History is kept."""
    await service.leave(room_id, user_id)
    return {"roomId": room_id, "left": True}


@router.get("/{room_id}/members")
async def list_members(
    room_id: str,
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> dict:
    """List participants with their presence state."""
    members = await service.rooms.members_of(room_id)
    if user_id not in members:
        raise NotMember(f"Not a member of room {room_id}")
    room = await service.rooms.get(room_id)
    return {
        "roomId": room_id,
        "members": [
            {"userId": member, "presence": service.presence.state_of(member).value}
            for member in room.participants
        ],
    }
