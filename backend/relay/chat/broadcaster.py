"""Best-effort event delivery to live connections.

Delivery is at-most-once: a subject without a registered connection is
skipped silently, a failing send is logged and dropped, and nothing is
queued or retried. Sends to several recipients run concurrently with
``asyncio.gather()``.
"""
import asyncio
import logging
from typing import Dict, Optional, Set

from .registry import ConnectionRegistry
from .rooms import RoomManager

logger = logging.getLogger(__name__)


class Broadcaster:
    """Fans events out through the registry and room manager."""

    def __init__(self, registry: ConnectionRegistry, rooms: RoomManager) -> None:
        self._registry = registry
        self._rooms = rooms

    async def unicast(self, subject_id: str, message: dict) -> bool:
        """Deliver to one subject. False if offline or the send failed."""
        connection = self._registry.lookup(subject_id)
        if connection is None:
            logger.debug(f"[Broadcast] {subject_id} offline, dropping {message.get('type')}")
            return False
        return await connection.send(message)

    async def broadcast_except(self, exclude_connection, message: dict) -> int:
        """Deliver to every registered connection except *exclude_connection*.

        Returns:
            Number of successful sends.
        """
        targets = [
            conn for conn in self._registry.connections()
            if conn is not exclude_connection
        ]
        if not targets:
            return 0
        results = await asyncio.gather(
            *[conn.send(message) for conn in targets],
            return_exceptions=True
        )
        return sum(1 for ok in results if ok is True)

    async def broadcast_to_room(
        self,
        conversation_id: str,
        message: dict,
        exclude_subject_id: Optional[str] = None,
    ) -> Set[str]:
        """Deliver to every live member of a room.

        Args:
            conversation_id: Room to broadcast to.
            message: JSON-serializable event.
            exclude_subject_id: Member to skip (e.g. the typist).

        Returns:
            Subject ids the event was delivered to.
        """
        targets: Dict[str, object] = {}
        for subject_id in self._rooms.members_of(conversation_id):
            if subject_id == exclude_subject_id:
                continue
            connection = self._registry.lookup(subject_id)
            if connection is not None:
                targets[subject_id] = connection
        if not targets:
            return set()

        results = await asyncio.gather(
            *[conn.send(message) for conn in targets.values()],
            return_exceptions=True
        )
        delivered = {
            subject_id for subject_id, ok in zip(targets, results)
            if ok is True
        }
        if len(delivered) < len(targets):
            logger.debug(
                f"[Broadcast] {len(targets) - len(delivered)} send(s) failed in room {conversation_id}"
            )
        return delivered
