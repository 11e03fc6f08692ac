"""Auth router.

Endpoints:
    GET /api/v1/auth/me - Identity behind the bearer token
"""
from fastapi import APIRouter, Depends

from app.chat.service import ChatService, get_chat_service

from .dependencies import get_current_user

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.get("/me")
async def me(
    user_id: str = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> dict:
    """Return the caller's identity and presence."""
    return {
        "userId": user_id,
        "presence": service.presence.state_of(user_id).value,
    }
