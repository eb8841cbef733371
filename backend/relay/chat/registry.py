"""Connection registry: subject id -> live connection.

At most one connection is registered per subject. What happens when a
second one arrives is decided here and only here, by ``DuplicatePolicy``.

Connections are opaque handles to the registry; it never looks inside
them, so any object with the session interface can be stored.
"""
import logging
from typing import Dict, Generic, List, Optional, Set, TypeVar

from relay.config import DuplicatePolicy

from .errors import DuplicateConnection

logger = logging.getLogger(__name__)

C = TypeVar("C")


class ConnectionRegistry(Generic[C]):
    """Maps authenticated subject ids to their live connection."""

    def __init__(self, policy: DuplicatePolicy = DuplicatePolicy.NEWEST_WINS) -> None:
        self.policy = DuplicatePolicy(policy)
        self._connections: Dict[str, C] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, subject_id: str) -> bool:
        return subject_id in self._connections

    def register(self, subject_id: str, connection: C) -> Optional[C]:
        """Register *connection* as the live connection for *subject_id*.

        Returns:
            The connection it replaced (for the caller to close), or None.

        Raises:
            DuplicateConnection: under REJECT_NEW when another connection
                is already registered. The existing entry is kept.
        """
        existing = self._connections.get(subject_id)
        if existing is connection:
            return None
        if existing is not None and self.policy == DuplicatePolicy.REJECT_NEW:
            logger.info(f"[Registry] Rejecting second connection for {subject_id}")
            raise DuplicateConnection(subject_id)

        self._connections[subject_id] = connection
        if existing is not None:
            logger.info(f"[Registry] Connection for {subject_id} superseded")
        return existing

    def unregister(self, subject_id: str, connection: C) -> bool:
        """Remove the entry only if it still points at *connection*.

        A stale close racing a newer registration leaves the newer one alone.
        """
        if self._connections.get(subject_id) is not connection:
            return False
        del self._connections[subject_id]
        return True

    def lookup(self, subject_id: str) -> Optional[C]:
        return self._connections.get(subject_id)

    def list_active_subjects(self) -> Set[str]:
        return set(self._connections)

    def connections(self) -> List[C]:
        """Snapshot of all registered connections."""
        return list(self._connections.values())
