"""Store contracts consumed by the session engine.

The relay core never talks to a database directly. It reads and mutates
subjects, conversations and messages through these interfaces, so the
backing store can be swapped without touching the engine.

Usage:
    from relay.store.service import ChatStore

    store = ChatStore(db_path=":memory:")
    if store.is_participant("chat-1", "alice"):
        store.append_message(message)
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .schemas import Conversation, DeliveryState, Message, Subject


class SubjectStore(ABC):
    """Lookup of registered identities."""

    @abstractmethod
    def get_subject(self, subject_id: str) -> Optional[Subject]:
        """Return the subject, or None if it was never registered."""

    @abstractmethod
    def save_subject(self, subject: Subject) -> Subject:
        """Insert or update a subject."""


class ConversationStore(ABC):
    """Conversation lookup and membership."""

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Return the conversation, or None if unknown."""

    @abstractmethod
    def is_participant(self, conversation_id: str, subject_id: str) -> bool:
        """True if *subject_id* belongs to *conversation_id*."""

    @abstractmethod
    def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        """Record activity on a conversation."""

    @abstractmethod
    def create_conversation(self, conversation: Conversation) -> Conversation:
        """Persist a new conversation with its participants."""

    @abstractmethod
    def find_direct_conversation(self, subject_a: str, subject_b: str) -> Optional[Conversation]:
        """Return the existing 1:1 conversation between two subjects, if any."""

    @abstractmethod
    def list_conversations(self, subject_id: str) -> List[Conversation]:
        """Conversations *subject_id* takes part in, most recent activity first."""


class MessageStore(ABC):
    """Message append, lookup and read-state mutation."""

    @abstractmethod
    def append_message(self, message: Message) -> Message:
        """Persist a new message."""

    @abstractmethod
    def get_message(self, message_id: str) -> Optional[Message]:
        """Return the message with its readers, or None if unknown."""

    @abstractmethod
    def list_messages(
        self,
        conversation_id: str,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
        before_id: Optional[str] = None,
    ) -> List[Message]:
        """Messages of a conversation, oldest first.

        With *limit*, only the newest *limit* messages (before the cursor)
        are returned. *before_id* is an exact cursor: only messages ordered
        before that message of the conversation.

        Raises:
            KeyError: *before_id* is not a message of the conversation.
        """

    @abstractmethod
    def add_reader(self, message_id: str, reader_id: str) -> bool:
        """Add *reader_id* to the message's readers. False if already present."""

    @abstractmethod
    def set_delivery_state(self, message_id: str, state: DeliveryState) -> DeliveryState:
        """Move the message forward to *state*; never backwards.

        Returns:
            The stored state after the call.
        """

    @abstractmethod
    def count_unread(self, conversation_id: str, subject_id: str) -> int:
        """Messages from others that *subject_id* has not read."""
