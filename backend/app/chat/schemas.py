"""Data models for rooms, messages and presence.

Field names are camelCase because these models are serialized straight
onto the wire (WebSocket frames and REST bodies) and into stored documents.
"""
import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class PresenceState(str, Enum):
    """Online/offline status derived from the active-connection count."""
    ONLINE = "online"
    OFFLINE = "offline"


class MessagePayload(BaseModel):
    """Message body: text, a media reference, or both.

    Attributes:
        text: Message text.
        mediaUrl: Durable URL returned by the media host.
    """
    text: Optional[str] = Field(default=None, description="Message text")
    mediaUrl: Optional[str] = Field(default=None, description="Media URL")


class Message(BaseModel):
    """A persisted chat message. Immutable once created.

    Attributes:
        id: Unique message identifier (auto-generated UUID).
        roomId: Room this message belongs to.
        sequence: Per-room monotonic, gapless sequence number (starts at 1).
        senderId: User identity of the sender.
        payload: Message body.
        createdAt: Unix timestamp (seconds since epoch).
    """
    model_config = {"frozen": True}

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique message ID"
    )
    roomId: str = Field(..., description="Room ID this message belongs to")
    sequence: int = Field(..., ge=1, description="Per-room sequence number")
    senderId: str = Field(..., description="User ID of the sender")
    payload: MessagePayload
    createdAt: float = Field(
        default_factory=time.time,
        description="Timestamp in seconds since epoch"
    )


class Room(BaseModel):
    """A conversation with persistent membership and history.

    Attributes:
        id: Unique room identifier.
        name: Optional human-readable name.
        isPrivate: Private rooms only admit invited users.
        participants: Members in join order.
        invited: Users allowed to join a private room.
        lastSequence: Sequence number of the latest persisted message.
        createdBy: User who created the room (None if created by a join).
        createdAt: Unix timestamp of creation.
    """
    id: str
    name: str = ""
    isPrivate: bool = False
    participants: List[str] = Field(default_factory=list)
    invited: List[str] = Field(default_factory=list)
    lastSequence: int = 0
    createdBy: Optional[str] = None
    createdAt: float = Field(default_factory=time.time)


class MembershipResult(BaseModel):
    """Outcome of a join."""
    roomId: str
    alreadyMember: bool
    lastSequence: int = 0


# =============================================================================
# REST request bodies
# =============================================================================


class ChatCreate(BaseModel):
    """Request body for creating a chat."""
    roomId: Optional[str] = None
    name: str = ""
    isPrivate: bool = False
    invited: List[str] = Field(default_factory=list)


class MessageSend(BaseModel):
    """Request body for sending a message over REST."""
    text: Optional[str] = None
    mediaUrl: Optional[str] = None


class MessagePage(BaseModel):
    """Ordered slice of a room's history."""
    roomId: str
    messages: List[Message]
    lastSequence: int
