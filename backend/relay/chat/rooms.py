"""Room manager: conversation id -> subjects focused on it.

A room is the set of subjects currently looking at a conversation; it
scopes message, typing and delivery broadcasts. Rooms are ephemeral:
created on first join, deleted when the last member leaves, and lost on
restart.

A subject is focused on at most one room. Joining another room moves it.
"""
import logging
from typing import Dict, Optional, Set

from relay.store.base import ConversationStore

from .errors import Unauthorized

logger = logging.getLogger(__name__)


class RoomManager:
    """Tracks room membership, checked against the conversation store."""

    def __init__(self, conversations: ConversationStore) -> None:
        self._conversations = conversations
        # conversation_id -> subject ids in the room
        self._rooms: Dict[str, Set[str]] = {}
        # subject_id -> conversation_id it is focused on
        self._focus: Dict[str, str] = {}

    def join(self, conversation_id: str, subject_id: str) -> Optional[str]:
        """Focus *subject_id* on *conversation_id*.

        Returns:
            The room the subject was moved out of, or None.

        Raises:
            Unauthorized: if the subject is not a participant. Membership
                is left unchanged.
        """
        if not self._conversations.is_participant(conversation_id, subject_id):
            raise Unauthorized(conversation_id)

        previous = self._focus.get(subject_id)
        if previous == conversation_id:
            return None
        if previous is not None:
            self._discard(previous, subject_id)

        self._rooms.setdefault(conversation_id, set()).add(subject_id)
        self._focus[subject_id] = conversation_id
        logger.debug(f"[Rooms] {subject_id} joined {conversation_id} (left {previous})")
        return previous

    def leave(self, conversation_id: str, subject_id: str) -> bool:
        """Remove *subject_id* from the room. False if it was not there."""
        if self._focus.get(subject_id) != conversation_id:
            return False
        del self._focus[subject_id]
        self._discard(conversation_id, subject_id)
        return True

    def leave_all(self, subject_id: str) -> Optional[str]:
        """Leave whatever room the subject is in; returns that room."""
        conversation_id = self._focus.get(subject_id)
        if conversation_id is not None:
            self.leave(conversation_id, subject_id)
        return conversation_id

    def members_of(self, conversation_id: str) -> Set[str]:
        return set(self._rooms.get(conversation_id, ()))

    def room_of(self, subject_id: str) -> Optional[str]:
        return self._focus.get(subject_id)

    def active_rooms(self) -> Set[str]:
        return set(self._rooms)

    def _discard(self, conversation_id: str, subject_id: str) -> None:
        members = self._rooms.get(conversation_id)
        if members is None:
            return
        members.discard(subject_id)
        if not members:
            del self._rooms[conversation_id]
            logger.debug(f"[Rooms] Room {conversation_id} deleted (empty)")
