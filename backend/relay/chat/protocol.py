"""Wire protocol for the relay WebSocket.

Every frame in either direction is a JSON object ``{"type": ..., "payload": {...}}``.

Client -> Server:
    - authenticate: {token}                       (handshake, if no ?token=)
    - join_chat: {chatId}
    - leave_chat: {chatId}
    - chat_message: {chatId, content}
    - typing / stop_typing: {chatId}
    - read_receipt: {messageId, senderId, chatId}
    - pong: {}

Server -> Client:
    - auth_success: {userId, username}
    - online_users: {userIds}
    - user_status: {userId, status}
    - joined_chat: {chatId}
    - receive_message: {id, sender, content, timestamp, status, chatId}
    - message_status_update: {messageId, chatId, status, readerId?}
    - typing: {userId, username, chatId}
    - stop_typing: {userId, chatId}
    - error: {message}
    - ping: {}
"""
import json
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Dict, Iterable, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError

from relay.store.schemas import DeliveryState, Message, Subject

from .errors import MalformedInput


class ClientEventType(str, Enum):
    AUTHENTICATE = "authenticate"
    JOIN_CHAT = "join_chat"
    LEAVE_CHAT = "leave_chat"
    CHAT_MESSAGE = "chat_message"
    TYPING = "typing"
    STOP_TYPING = "stop_typing"
    READ_RECEIPT = "read_receipt"
    PONG = "pong"


class ServerEventType(str, Enum):
    AUTH_SUCCESS = "auth_success"
    ONLINE_USERS = "online_users"
    USER_STATUS = "user_status"
    JOINED_CHAT = "joined_chat"
    RECEIVE_MESSAGE = "receive_message"
    MESSAGE_STATUS_UPDATE = "message_status_update"
    TYPING = "typing"
    STOP_TYPING = "stop_typing"
    ERROR = "error"
    PING = "ping"


# =============================================================================
# Inbound payloads
# =============================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


# Chat ids are normalized the same way in every event
ChatId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class AuthenticatePayload(_Payload):
    token: str = Field(..., min_length=1)


class ChatRefPayload(_Payload):
    """Payload naming a single chat (join, leave, typing)."""
    chatId: ChatId


class ChatMessagePayload(_Payload):
    # Content is relayed as typed
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=False)

    chatId: ChatId
    content: str


class ReadReceiptPayload(_Payload):
    messageId: str = Field(..., min_length=1)
    chatId: ChatId
    # Advisory only; the stored sender is authoritative.
    senderId: Optional[str] = None


class EmptyPayload(_Payload):
    pass


PAYLOAD_MODELS: Dict[ClientEventType, Type[_Payload]] = {
    ClientEventType.AUTHENTICATE: AuthenticatePayload,
    ClientEventType.JOIN_CHAT: ChatRefPayload,
    ClientEventType.LEAVE_CHAT: ChatRefPayload,
    ClientEventType.CHAT_MESSAGE: ChatMessagePayload,
    ClientEventType.TYPING: ChatRefPayload,
    ClientEventType.STOP_TYPING: ChatRefPayload,
    ClientEventType.READ_RECEIPT: ReadReceiptPayload,
    ClientEventType.PONG: EmptyPayload,
}


@dataclass(frozen=True)
class ClientEvent:
    type: ClientEventType
    payload: BaseModel


def parse_client_event(raw: Optional[str]) -> ClientEvent:
    """Decode and validate one inbound frame.

    *raw* is None for a frame that carried no text (a binary frame).

    Raises:
        MalformedInput: for a non-text frame, invalid JSON, an unknown
            type or a bad payload.
    """
    if raw is None:
        raise MalformedInput("Invalid message format: expected a text frame")
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise MalformedInput("Invalid message format: expected a JSON object")
    if not isinstance(data, dict):
        raise MalformedInput("Invalid message format: expected a JSON object")

    raw_type = data.get("type")
    try:
        event_type = ClientEventType(raw_type)
    except ValueError:
        raise MalformedInput(f"Unknown event type: {raw_type!r}")

    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise MalformedInput(f"Invalid payload for {event_type.value}")
    try:
        model = PAYLOAD_MODELS[event_type].model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"]) or "payload"
            for err in exc.errors()
        )
        raise MalformedInput(f"Invalid payload for {event_type.value}: {fields}")
    return ClientEvent(type=event_type, payload=model)


# =============================================================================
# Outbound events
# =============================================================================


def event(event_type: ServerEventType, **payload) -> dict:
    return {"type": event_type.value, "payload": payload}


def auth_success(subject: Subject) -> dict:
    return event(ServerEventType.AUTH_SUCCESS, userId=subject.id, username=subject.displayName)


def online_users(subject_ids: Iterable[str]) -> dict:
    return event(ServerEventType.ONLINE_USERS, userIds=sorted(subject_ids))


def user_status(subject_id: str, online: bool) -> dict:
    return event(
        ServerEventType.USER_STATUS,
        userId=subject_id,
        status="online" if online else "offline",
    )


def joined_chat(conversation_id: str) -> dict:
    return event(ServerEventType.JOINED_CHAT, chatId=conversation_id)


def receive_message(message: Message) -> dict:
    return event(
        ServerEventType.RECEIVE_MESSAGE,
        id=message.id,
        sender=message.senderId,
        content=message.content,
        timestamp=message.createdAt.isoformat(),
        status=message.deliveryState.value,
        chatId=message.conversationId,
    )


def message_status_update(
    message_id: str,
    conversation_id: str,
    status: DeliveryState,
    reader_id: Optional[str] = None,
) -> dict:
    payload = {
        "messageId": message_id,
        "chatId": conversation_id,
        "status": DeliveryState(status).value,
    }
    if reader_id is not None:
        payload["readerId"] = reader_id
    return event(ServerEventType.MESSAGE_STATUS_UPDATE, **payload)


def typing(subject: Subject, conversation_id: str) -> dict:
    return event(
        ServerEventType.TYPING,
        userId=subject.id,
        username=subject.displayName,
        chatId=conversation_id,
    )


def stop_typing(subject_id: str, conversation_id: str) -> dict:
    return event(ServerEventType.STOP_TYPING, userId=subject_id, chatId=conversation_id)


def error(message: str) -> dict:
    return event(ServerEventType.ERROR, message=message)


def ping() -> dict:
    return event(ServerEventType.PING)
