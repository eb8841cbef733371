"""Conversations router: chat list, chat creation, message send and history.

Endpoints (all require ``Authorization: Bearer <jwt>``):
    - GET  /api/chats: Chats of the caller with last message and unread count
    - POST /api/chats: Create a 1:1 chat (deduplicated) or a group chat
    - POST /api/messages: Send a message (same path as the WebSocket send)
    - GET  /api/messages/{chat_id}: Paginated message history, oldest first
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from relay.auth.dependencies import get_current_subject
from relay.chat.engine import SessionEngine, get_engine
from relay.chat.errors import MalformedInput, Unauthorized
from relay.store.schemas import Conversation, Subject

from .schemas import (
    ChatCreate,
    ChatOut,
    ChatSummary,
    LastMessage,
    MessageCreate,
    MessageOut,
    MessagePage,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["conversations"])

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def _chat_name(engine: SessionEngine, conversation: Conversation, viewer_id: str) -> str:
    """Group name, or the other participant's display name for 1:1 chats."""
    if conversation.isGroup:
        return conversation.name
    others = sorted(conversation.participantIds - {viewer_id})
    if not others:
        return conversation.name
    other = engine.subjects.get_subject(others[0])
    return other.displayName if other else others[0]


@router.get("/chats", response_model=List[ChatSummary])
async def list_chats(
    subject: Subject = Depends(get_current_subject),
    engine: SessionEngine = Depends(get_engine),
) -> List[ChatSummary]:
    """List the caller's chats, most recently active first."""
    summaries = []
    for conversation in engine.conversations.list_conversations(subject.id):
        latest = engine.messages.list_messages(conversation.id, limit=1)
        summaries.append(ChatSummary(
            id=conversation.id,
            name=_chat_name(engine, conversation, subject.id),
            isGroup=conversation.isGroup,
            groupAdmin=conversation.groupAdminId,
            participants=sorted(conversation.participantIds),
            lastMessage=LastMessage.from_message(latest[0]) if latest else None,
            unreadCount=engine.messages.count_unread(conversation.id, subject.id),
        ))
    return summaries


@router.post("/chats", status_code=201, response_model=ChatOut)
async def create_chat(
    body: ChatCreate,
    subject: Subject = Depends(get_current_subject),
    engine: SessionEngine = Depends(get_engine),
) -> JSONResponse:
    """Create a chat with the caller as a participant.

    Returns:
        The new chat (201), or the existing 1:1 chat with the receiver (200).

    Raises:
        HTTPException 400: missing receiver, or a group without a name or
            other participants.
    """
    if body.isGroup:
        name = (body.name or "").strip()
        participants = {p.strip() for p in body.participants if p and p.strip()}
        participants.add(subject.id)
        if not name or len(participants) < 2:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Group name and participants are required",
            )
        conversation = engine.conversations.create_conversation(Conversation(
            participantIds=participants,
            isGroup=True,
            name=name,
            groupAdminId=subject.id,
        ))
        logger.info(
            "[chats] %s created group %s with %d participants",
            subject.id, conversation.id, len(participants),
        )
        return JSONResponse(
            ChatOut.from_conversation(conversation).model_dump(mode="json"),
            status_code=201,
        )

    receiver_id = (body.receiverId or "").strip()
    if not receiver_id or receiver_id == subject.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Receiver ID is required",
        )

    existing = engine.conversations.find_direct_conversation(subject.id, receiver_id)
    if existing is not None:
        return JSONResponse(ChatOut.from_conversation(existing).model_dump(mode="json"))

    conversation = engine.conversations.create_conversation(
        Conversation(participantIds={subject.id, receiver_id})
    )
    logger.info("[chats] %s created chat %s with %s", subject.id, conversation.id, receiver_id)
    return JSONResponse(
        ChatOut.from_conversation(conversation).model_dump(mode="json"),
        status_code=201,
    )


def _load_for_participant(engine: SessionEngine, chat_id: str, subject: Subject) -> Conversation:
    """Return the chat if *subject* may access it.

    Raises:
        HTTPException 404: unknown chat.
        HTTPException 403: the caller is not a participant.
    """
    conversation = engine.conversations.get_conversation(chat_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    if subject.id not in conversation.participantIds:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this chat",
        )
    return conversation


@router.post("/messages", status_code=201, response_model=MessageOut)
async def send_message(
    body: MessageCreate,
    subject: Subject = Depends(get_current_subject),
    engine: SessionEngine = Depends(get_engine),
) -> MessageOut:
    """Send a message over HTTP.

    The message is stored like one sent over the WebSocket, and members
    focused on the chat receive it live.

    Raises:
        HTTPException 400: blank or oversized content.
        HTTPException 404: unknown chat.
        HTTPException 403: the caller is not a participant.
    """
    chat_id = body.chatId.strip()
    _load_for_participant(engine, chat_id, subject)
    try:
        message = await engine.post_message(subject.id, chat_id, body.content)
    except Unauthorized as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.message)
    except MalformedInput as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    logger.info("[messages] %s sent %s to %s over HTTP", subject.id, message.id, chat_id)
    return MessageOut.from_message(message)


@router.get("/messages/{chat_id}", response_model=MessagePage)
async def get_messages(
    chat_id: str,
    before: Optional[datetime] = Query(None, description="Only messages created before this time"),
    beforeId: Optional[str] = Query(None, description="Only messages older than this message"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Number of messages to return"),
    subject: Subject = Depends(get_current_subject),
    engine: SessionEngine = Depends(get_engine),
) -> MessagePage:
    """Get a page of a chat's history, oldest first.

    Clients page backwards by passing the ``id`` of the oldest message
    they have as ``beforeId``. ``before`` filters by time and may skip
    messages that share a timestamp across a page boundary.

    Raises:
        HTTPException 400: ``beforeId`` is not a message of this chat.
        HTTPException 404: unknown chat.
        HTTPException 403: the caller is not a participant.
    """
    _load_for_participant(engine, chat_id, subject)

    # One extra row tells us whether an older page exists
    try:
        messages = engine.messages.list_messages(
            chat_id, before=before, limit=limit + 1, before_id=beforeId
        )
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="beforeId is not a message of this chat",
        )
    has_more = len(messages) > limit
    if has_more:
        messages = messages[1:]
    return MessagePage(
        messages=[MessageOut.from_message(m) for m in messages],
        hasMore=has_more,
    )
