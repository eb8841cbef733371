"""Pydantic schemas for the records the relay reads and writes.

These are the shapes exchanged with the store contracts in ``base.py``:
    - Subject: an authenticated identity (created at registration)
    - Conversation: a 1:1 or group chat with its participant set
    - Message: a chat message with its delivery state and readers
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Set

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryState(str, Enum):
    """Lifecycle stage of a message.

    Attributes:
        SENT: Stored by the relay.
        DELIVERED: Pushed to at least one recipient's live connection.
        READ: Every participant other than the sender has read it.
    """
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


_DELIVERY_ORDER = (DeliveryState.SENT, DeliveryState.DELIVERED, DeliveryState.READ)


def rank(state: DeliveryState) -> int:
    """Position of *state* in the delivery lifecycle."""
    return _DELIVERY_ORDER.index(DeliveryState(state))


def advance(current: DeliveryState, target: DeliveryState) -> DeliveryState:
    """Return *target* if it is ahead of *current*, else *current*."""
    if rank(target) > rank(current):
        return DeliveryState(target)
    return DeliveryState(current)


class Subject(BaseModel):
    """Authenticated identity."""
    id: str = Field(..., description="Subject id (JWT sub claim)")
    displayName: str = Field(..., description="Name shown to other users")


class Conversation(BaseModel):
    """A conversation and its participants.

    Attributes:
        id: Conversation identifier (the wire protocol calls it chatId).
        participantIds: Subjects allowed to join and post.
        isGroup: True for group chats, False for 1:1.
        name: Group name (empty for 1:1).
        groupAdminId: Creator of a group chat.
        createdAt: Creation time (UTC).
        lastActivityAt: Time of the latest appended message (UTC).
    """
    id: str = Field(default_factory=lambda: f"chat-{uuid.uuid4()}")
    participantIds: Set[str] = Field(..., min_length=2)
    isGroup: bool = False
    name: str = ""
    groupAdminId: Optional[str] = None
    createdAt: datetime = Field(default_factory=utcnow)
    lastActivityAt: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    """A stored chat message.

    ``readBy`` only ever grows and never contains the sender;
    ``deliveryState`` only moves forward (see ``advance``).
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversationId: str
    senderId: str
    content: str
    createdAt: datetime = Field(default_factory=utcnow)
    deliveryState: DeliveryState = DeliveryState.SENT
    readBy: Set[str] = Field(default_factory=set)
