"""Session protocol engine for the real-time relay.

This module owns all live relay state and drives every connection
through its lifecycle:

    unauthenticated --handshake--> authenticated --close/timeout--> closed

Key features:
    - Token handshake via query parameter or first ``authenticate`` frame
    - One live connection per subject (newest wins, or reject new)
    - Presence: online snapshot on connect, online/offline broadcasts
    - Room focus per conversation, checked against participants
    - Message append + fan-out with sent -> delivered -> read tracking
    - Read receipts reported to the sender only
    - Typing indicators (stateless, fire-and-forget)
    - Heartbeat ping/pong sweep that reaps silent connections

Thread Safety:
    Designed for a single asyncio event loop. Per-conversation locks
    serialize message appends and read-state updates so concurrent
    receipts cannot lose readers or move a delivery state backwards.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from relay.auth.service import TokenVerifier
from relay.config import AppConfig, DuplicatePolicy, get_config
from relay.store.base import ConversationStore, MessageStore, SubjectStore
from relay.store.schemas import DeliveryState, Message, Subject
from relay.store.service import ChatStore

from . import protocol
from .broadcaster import Broadcaster
from .errors import (
    CLOSE_GOING_AWAY,
    CLOSE_POLICY_VIOLATION,
    CLOSE_SUPERSEDED,
    AuthenticationFailed,
    DuplicateConnection,
    MalformedInput,
    MessageNotFound,
    NotInRoom,
    RelayError,
    Unauthorized,
)
from .protocol import ClientEvent, ClientEventType
from .receipts import apply_read
from .registry import ConnectionRegistry
from .rooms import RoomManager
from .session import Session, SessionState

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_HEARTBEAT_INTERVAL = 30.0

DEFAULT_MAX_MESSAGE_LENGTH = 4000

DEFAULT_HANDSHAKE_TIMEOUT = 10.0


class ConversationLocks:
    """One ``asyncio.Lock`` per conversation id, dropped when unused."""

    def __init__(self) -> None:
        # conversation_id -> [lock, holders + waiters]
        self._locks: Dict[str, list] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(conversation_id)
        if entry is None:
            entry = self._locks[conversation_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[conversation_id]


class SessionEngine:
    """Registry, rooms, broadcaster and the protocol state machine.

    Attributes:
        verifier: Resolves bearer tokens to subjects.
        registry: subject id -> live Session.
        rooms: conversation id -> focused subject ids.
        broadcaster: Best-effort delivery over registry and rooms.
        locks: Per-conversation mutual exclusion for message state.
    """

    def __init__(
        self,
        verifier: TokenVerifier,
        subjects: SubjectStore,
        conversations: ConversationStore,
        messages: MessageStore,
        *,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.NEWEST_WINS,
        max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
    ) -> None:
        self.verifier = verifier
        self.subjects = subjects
        self.conversations = conversations
        self.messages = messages
        self.max_message_length = max_message_length
        self.heartbeat_interval = heartbeat_interval
        self.handshake_timeout = handshake_timeout

        self.registry: ConnectionRegistry[Session] = ConnectionRegistry(duplicate_policy)
        self.rooms = RoomManager(conversations)
        self.broadcaster = Broadcaster(self.registry, self.rooms)
        self.locks = ConversationLocks()

        self._heartbeat_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Handshake
    # =========================================================================

    def resolve_subject(self, token: Optional[str]) -> Subject:
        """Verify *token*, preferring the stored display name.

        A subject seen for the first time is recorded with the name its
        token carries, so chat lists can name peers who are offline.

        Raises:
            AuthenticationFailed: if the verifier rejects the token.
        """
        subject = self.verifier.verify(token)
        stored = self.subjects.get_subject(subject.id)
        if stored is None:
            logger.info(f"[Engine] Recording new subject {subject.id}")
            return self.subjects.save_subject(subject)
        return stored

    async def authenticate(self, session: Session, token: Optional[str]) -> Subject:
        """Run the handshake for *session*.

        On success the session is registered, receives ``auth_success`` and
        ``online_users``, and everyone else receives ``user_status: online``.

        Raises:
            MalformedInput: the session is already authenticated.
            AuthenticationFailed: bad credential.
            DuplicateConnection: under reject_new with a live connection.
        """
        if session.state != SessionState.UNAUTHENTICATED:
            raise MalformedInput("Session already authenticated")

        subject = self.resolve_subject(token)
        previous = self.registry.register(subject.id, session)
        session.bind(subject)
        logger.info(f"[Engine] {subject.id} authenticated on session {session.id[:8]}")

        if previous is not None:
            await self._retire(previous)

        await session.send(protocol.auth_success(subject))
        await session.send(protocol.online_users(self.registry.list_active_subjects()))
        await self.broadcaster.broadcast_except(
            session, protocol.user_status(subject.id, online=True)
        )
        return subject

    async def _retire(self, superseded: Session) -> None:
        """Shut down a connection replaced by a newer one for the same subject.

        The subject stays online, so no presence change is broadcast; its
        room focus is dropped and the new client re-joins.
        """
        logger.info(f"[Engine] Superseding session {superseded.id[:8]} of {superseded.subject_id}")
        if superseded.subject_id is not None:
            self.rooms.leave_all(superseded.subject_id)
        superseded.mark_closed()
        await superseded.close_transport(CLOSE_SUPERSEDED, "Superseded by a newer connection")

    async def reject(self, session: Session, error: RelayError) -> None:
        """Close *session* after a fatal handshake error."""
        logger.info(f"[Engine] Closing session {session.id[:8]}: {error.message}")
        reason = "Authentication failed" if isinstance(error, AuthenticationFailed) else error.message
        await self.close(session)
        await session.close_transport(getattr(error, "close_code", CLOSE_POLICY_VIOLATION), reason)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle(self, session: Session, raw: Optional[str]) -> None:
        """Process one inbound frame.

        Errors never escape: protocol errors become an ``error`` event,
        fatal handshake errors close the session, anything else is logged
        and reported as an internal error.
        """
        if session.is_closed:
            return
        try:
            event = protocol.parse_client_event(raw)
            await self.dispatch(session, event)
        except (AuthenticationFailed, DuplicateConnection) as e:
            await self.reject(session, e)
        except RelayError as e:
            logger.debug(f"[Engine] Rejected event from {session.subject_id}: {e.message}")
            await session.send(protocol.error(e.message))
        except Exception:
            logger.exception(f"[Engine] Unexpected error handling event on session {session.id[:8]}")
            await session.send(protocol.error("Internal server error"))

    async def dispatch(self, session: Session, event: ClientEvent) -> None:
        payload = event.payload

        if event.type == ClientEventType.AUTHENTICATE:
            await self.authenticate(session, payload.token)
            return

        if not session.is_authenticated:
            raise RelayError("Authentication required")

        if event.type == ClientEventType.PONG:
            session.awaiting_pong = False
        elif event.type == ClientEventType.JOIN_CHAT:
            await self.join_room(session, payload.chatId)
        elif event.type == ClientEventType.LEAVE_CHAT:
            self.leave_room(session, payload.chatId)
        elif event.type == ClientEventType.CHAT_MESSAGE:
            await self.send_message(session, payload.chatId, payload.content)
        elif event.type == ClientEventType.TYPING:
            await self.typing(session, payload.chatId, is_typing=True)
        elif event.type == ClientEventType.STOP_TYPING:
            await self.typing(session, payload.chatId, is_typing=False)
        elif event.type == ClientEventType.READ_RECEIPT:
            await self.read_receipt(session, payload.messageId, payload.chatId)

    # =========================================================================
    # Operations
    # =========================================================================

    async def join_room(self, session: Session, conversation_id: str) -> None:
        """Focus the session's subject on a conversation.

        Raises:
            Unauthorized: if the subject is not a participant.
        """
        previous = self.rooms.join(conversation_id, session.subject_id)
        if previous is not None:
            logger.info(f"[Engine] {session.subject_id} moved from {previous} to {conversation_id}")
        await session.send(protocol.joined_chat(conversation_id))

    def leave_room(self, session: Session, conversation_id: str) -> None:
        self.rooms.leave(conversation_id, session.subject_id)

    async def send_message(self, session: Session, conversation_id: str, content: str) -> Message:
        """Append a message and fan it out to the room.

        Raises:
            MalformedInput: blank or oversized content.
            NotInRoom: the sender has not joined *conversation_id*.
            Unauthorized: the sender is no longer a participant.
        """
        self._check_content(content)
        sender_id = session.subject_id
        if self.rooms.room_of(sender_id) != conversation_id:
            raise NotInRoom(conversation_id)
        return await self.post_message(sender_id, conversation_id, content)

    async def post_message(self, sender_id: str, conversation_id: str, content: str) -> Message:
        """Append a message from *sender_id* without requiring room focus.

        Used by the HTTP send route and, after its room check, by
        ``send_message``. Members currently in the room receive it live.

        Raises:
            MalformedInput: blank or oversized content.
            Unauthorized: the sender is not a participant.
        """
        self._check_content(content)
        if not self.conversations.is_participant(conversation_id, sender_id):
            raise Unauthorized(conversation_id)

        async with self.locks.hold(conversation_id):
            message = Message(
                conversationId=conversation_id,
                senderId=sender_id,
                content=content,
            )
            self.messages.append_message(message)
            self.conversations.touch_conversation(conversation_id, message.createdAt)

            # Sender included, for client-side id reconciliation
            delivered_to = await self.broadcaster.broadcast_to_room(
                conversation_id, protocol.receive_message(message)
            )
            if delivered_to - {sender_id}:
                message.deliveryState = self.messages.set_delivery_state(
                    message.id, DeliveryState.DELIVERED
                )
                await self.broadcaster.broadcast_to_room(
                    conversation_id,
                    protocol.message_status_update(
                        message.id, conversation_id, DeliveryState.DELIVERED
                    ),
                    exclude_subject_id=sender_id,
                )

        logger.info(
            f"[Engine] {sender_id} -> {conversation_id}: message {message.id} "
            f"({message.deliveryState.value}, {len(delivered_to)} recipient(s))"
        )
        return message

    def _check_content(self, content: Optional[str]) -> None:
        if not content or not content.strip():
            raise MalformedInput("Invalid message format: content is required")
        if len(content) > self.max_message_length:
            raise MalformedInput(
                f"Message too long ({len(content)} > {self.max_message_length} characters)"
            )

    async def typing(self, session: Session, conversation_id: str, is_typing: bool) -> None:
        """Forward a typing indicator; ignored outside the subject's room."""
        if self.rooms.room_of(session.subject_id) != conversation_id:
            return
        if is_typing:
            message = protocol.typing(session.subject, conversation_id)
        else:
            message = protocol.stop_typing(session.subject_id, conversation_id)
        await self.broadcaster.broadcast_to_room(
            conversation_id, message, exclude_subject_id=session.subject_id
        )

    async def read_receipt(
        self, session: Session, message_id: str, conversation_id: str
    ) -> Optional[DeliveryState]:
        """Record that the session's subject read a message.

        The sender (only) is told, if online. Receipts from the sender and
        repeated receipts change nothing and notify no one.

        Returns:
            The message's delivery state after the receipt, or None for a no-op.

        Raises:
            Unauthorized: the reader is not a participant of *conversation_id*.
            MessageNotFound: unknown message, or it belongs to another chat.
        """
        reader_id = session.subject_id
        if not self.conversations.is_participant(conversation_id, reader_id):
            raise Unauthorized(conversation_id)

        async with self.locks.hold(conversation_id):
            message = self.messages.get_message(message_id)
            if message is None or message.conversationId != conversation_id:
                raise MessageNotFound(message_id)
            conversation = self.conversations.get_conversation(conversation_id)
            outcome = apply_read(message, reader_id, conversation.participantIds)
            if not outcome.changed:
                return None
            self.messages.add_reader(message.id, reader_id)
            state = self.messages.set_delivery_state(message.id, outcome.state)

        await self.broadcaster.unicast(
            message.senderId,
            protocol.message_status_update(
                message.id, conversation_id, state, reader_id=reader_id
            ),
        )
        logger.debug(f"[Engine] {reader_id} read {message.id} ({state.value})")
        if outcome.fully_read:
            logger.info(f"[Engine] Message {message.id} in {conversation_id} read by every recipient")
        return state

    # =========================================================================
    # Close
    # =========================================================================

    async def close(self, session: Session) -> None:
        """Clean up after a closed connection. Safe to call more than once.

        Only the connection still registered for its subject leaves the room
        and triggers the offline broadcast; a superseded one does neither.
        """
        previous_state = session.mark_closed()
        if previous_state != SessionState.AUTHENTICATED:
            return

        subject_id = session.subject_id
        if not self.registry.unregister(subject_id, session):
            return
        self.rooms.leave_all(subject_id)
        logger.info(f"[Engine] {subject_id} disconnected ({len(self.registry)} online)")
        await self.broadcaster.broadcast_except(
            session, protocol.user_status(subject_id, online=False)
        )

    # =========================================================================
    # Heartbeat
    # =========================================================================

    async def sweep(self) -> List[Session]:
        """One heartbeat round.

        Sessions that did not answer the previous ping are closed; every
        other authenticated session is pinged.

        Returns:
            The sessions that were reaped.
        """
        reaped: List[Session] = []
        to_ping: List[Session] = []
        for session in self.registry.connections():
            if session.awaiting_pong:
                reaped.append(session)
            else:
                to_ping.append(session)

        for session in reaped:
            logger.warning(f"[Engine] Heartbeat timeout for {session.subject_id}")
            await self.close(session)
            await session.close_transport(CLOSE_GOING_AWAY, "Heartbeat timeout")

        for session in to_ping:
            session.awaiting_pong = True
        if to_ping:
            await asyncio.gather(
                *[session.send(protocol.ping()) for session in to_ping],
                return_exceptions=True
            )
        return reaped

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("[Engine] Heartbeat sweep failed")

    def start_heartbeat(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            logger.info(f"[Engine] Heartbeat started (every {self.heartbeat_interval}s)")

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


# =============================================================================
# Process-wide engine
# =============================================================================


def build_engine(config: AppConfig) -> SessionEngine:
    """Create an engine wired to the configured store and verifier."""
    store = ChatStore.get_instance(config.store.db_path)
    verifier = TokenVerifier(
        secret_key=config.secrets.jwt.secret_key,
        algorithm=config.auth.algorithm,
        issuer=config.auth.issuer,
    )
    return SessionEngine(
        verifier,
        subjects=store,
        conversations=store,
        messages=store,
        duplicate_policy=config.session.duplicate_policy,
        max_message_length=config.session.max_message_length,
        heartbeat_interval=config.heartbeat.interval_seconds,
        handshake_timeout=config.auth.handshake_timeout_seconds,
    )


_engine: Optional[SessionEngine] = None


def get_engine() -> SessionEngine:
    """Return the process-wide engine, building it from config on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_config())
    return _engine


def set_engine(engine: Optional[SessionEngine]) -> None:
    """Set (or clear) the process-wide engine."""
    global _engine
    _engine = engine
