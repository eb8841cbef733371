"""Per-connection session state.

A ``Session`` wraps one WebSocket and tracks where it is in the
``unauthenticated -> authenticated -> closed`` lifecycle. It is the
connection handle stored in the registry; the engine drives every
transition.
"""
import logging
import time
import uuid
from enum import Enum
from typing import Optional

from fastapi import WebSocket

from relay.store.schemas import Subject

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class Session:
    """One live client connection.

    Attributes:
        id: Server-generated id used in logs.
        websocket: The underlying transport.
        state: Current lifecycle state.
        subject: The authenticated identity (None until the handshake succeeds).
        awaiting_pong: True between a heartbeat ping and the client's pong.
        connected_at: Unix timestamp of the transport accept.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.state = SessionState.UNAUTHENTICATED
        self.subject: Optional[Subject] = None
        self.awaiting_pong = False
        self.connected_at = time.time()
        self._transport_closed = False

    def __repr__(self) -> str:
        return f"<Session {self.id[:8]} {self.state.value} subject={self.subject_id}>"

    @property
    def subject_id(self) -> Optional[str]:
        return self.subject.id if self.subject else None

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def bind(self, subject: Subject) -> None:
        """Complete the handshake for *subject*."""
        if self.state != SessionState.UNAUTHENTICATED:
            raise RuntimeError(f"Cannot authenticate a session in state {self.state.value}")
        self.subject = subject
        self.state = SessionState.AUTHENTICATED

    def mark_closed(self) -> SessionState:
        """Move to CLOSED, returning the state it was in before."""
        previous = self.state
        self.state = SessionState.CLOSED
        return previous

    async def send(self, message: dict) -> bool:
        """Send a JSON event, returning False instead of raising on failure."""
        if self._transport_closed:
            return False
        try:
            await self.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to session {self.id}: {e}")
            return False

    async def close_transport(self, code: int = 1000, reason: str = "") -> None:
        """Close the WebSocket once; later calls are no-ops."""
        if self._transport_closed:
            return
        self._transport_closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Close failed for session {self.id}: {e}")
