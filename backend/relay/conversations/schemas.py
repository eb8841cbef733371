"""Pydantic schemas for the conversations HTTP surface."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from relay.store.schemas import Conversation, DeliveryState, Message


class ChatCreate(BaseModel):
    """Request body for creating a chat.

    A 1:1 chat needs ``receiverId``; a group needs ``isGroup``, ``name``
    and at least one other participant.
    """
    receiverId:   Optional[str] = None
    isGroup:      bool          = False
    name:         Optional[str] = Field(default=None, max_length=200)
    participants: List[str]     = Field(default_factory=list)


class MessageCreate(BaseModel):
    """Request body for ``POST /api/messages``. Content is kept as typed."""
    chatId:  str = Field(..., min_length=1)
    content: str


class LastMessage(BaseModel):
    id:        str
    content:   str
    timestamp: datetime
    status:    DeliveryState

    @classmethod
    def from_message(cls, message: Message) -> "LastMessage":
        return cls(
            id=message.id,
            content=message.content,
            timestamp=message.createdAt,
            status=message.deliveryState,
        )


class ChatSummary(BaseModel):
    """One entry of ``GET /api/chats``."""
    id:           str
    name:         str
    isGroup:      bool
    groupAdmin:   Optional[str] = None
    participants: List[str]
    lastMessage:  Optional[LastMessage] = None
    unreadCount:  int = 0


class ChatOut(BaseModel):
    """A chat as returned by ``POST /api/chats``."""
    id:           str
    name:         str
    isGroup:      bool
    groupAdmin:   Optional[str] = None
    participants: List[str]
    createdAt:    datetime

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ChatOut":
        return cls(
            id=conversation.id,
            name=conversation.name,
            isGroup=conversation.isGroup,
            groupAdmin=conversation.groupAdminId,
            participants=sorted(conversation.participantIds),
            createdAt=conversation.createdAt,
        )


class MessageOut(BaseModel):
    """A stored message in history responses (same field names as ``receive_message``)."""
    id:        str
    chatId:    str
    sender:    str
    content:   str
    timestamp: datetime
    status:    DeliveryState
    readBy:    List[str]

    @classmethod
    def from_message(cls, message: Message) -> "MessageOut":
        return cls(
            id=message.id,
            chatId=message.conversationId,
            sender=message.senderId,
            content=message.content,
            timestamp=message.createdAt,
            status=message.deliveryState,
            readBy=sorted(message.readBy),
        )


class MessagePage(BaseModel):
    """Response of ``GET /api/messages/{chatId}``, oldest first."""
    messages: List[MessageOut]
    hasMore:  bool
