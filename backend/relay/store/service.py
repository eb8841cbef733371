"""DuckDB-backed store for subjects, conversations and messages.

This is the relay's default implementation of the store contracts in
``base.py``. DuckDB is embedded, so the relay runs standalone with either
a file database or ``:memory:``.

Database Schema:
    subjects: id, display_name, created_at
    conversations: id, is_group, name, group_admin_id, created_at, last_activity_at
    conversation_participants: (conversation_id, subject_id)
    messages: seq, id, conversation_id, sender_id, content, created_at, delivery_state
    message_reads: (message_id, reader_id), read_at

Timestamps are stored as naive UTC and returned timezone-aware.

Subjects are recorded by the engine the first time a token for them is
verified, with the token's ``username`` claim as display name. A stored
name is kept on later logins; ``save_subject`` overwrites it.

Thread Safety:
    The DuckDB connection is NOT thread-safe. All calls are expected to
    come from the event loop thread that owns the relay.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from .base import ConversationStore, MessageStore, SubjectStore
from .schemas import Conversation, DeliveryState, Message, Subject, advance, utcnow

logger = logging.getLogger(__name__)

_SCHEMA = (
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS subjects (
        id           VARCHAR PRIMARY KEY,
        display_name VARCHAR NOT NULL,
        created_at   TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id               VARCHAR PRIMARY KEY,
        is_group         BOOLEAN NOT NULL DEFAULT FALSE,
        name             VARCHAR NOT NULL DEFAULT '',
        group_admin_id   VARCHAR,
        created_at       TIMESTAMP NOT NULL,
        last_activity_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_participants (
        conversation_id VARCHAR NOT NULL,
        subject_id      VARCHAR NOT NULL,
        PRIMARY KEY (conversation_id, subject_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        seq             BIGINT DEFAULT nextval('messages_seq'),
        id              VARCHAR PRIMARY KEY,
        conversation_id VARCHAR NOT NULL,
        sender_id       VARCHAR NOT NULL,
        content         VARCHAR NOT NULL,
        created_at      TIMESTAMP NOT NULL,
        delivery_state  VARCHAR NOT NULL DEFAULT 'sent'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_reads (
        message_id VARCHAR NOT NULL,
        reader_id  VARCHAR NOT NULL,
        read_at    TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, reader_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id)",
)


def _to_db(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _from_db(ts: datetime) -> datetime:
    return ts.replace(tzinfo=timezone.utc)


class ChatStore(SubjectStore, ConversationStore, MessageStore):
    """Singleton DuckDB store implementing every store contract.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file (or ":memory:").
    """

    _instance: Optional["ChatStore"] = None
    _default_db_path: str = ":memory:"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[ChatStore] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "ChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton (used by tests and shutdown)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        for statement in _SCHEMA:
            conn.execute(statement)

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    # -----------------------------------------------------------------------
    # Subjects
    # -----------------------------------------------------------------------

    def get_subject(self, subject_id: str) -> Optional[Subject]:
        row = self._get_connection().execute(
            "SELECT id, display_name FROM subjects WHERE id = ?", [subject_id]
        ).fetchone()
        if row is None:
            return None
        return Subject(id=row[0], displayName=row[1])

    def save_subject(self, subject: Subject) -> Subject:
        conn = self._get_connection()
        exists = conn.execute(
            "SELECT 1 FROM subjects WHERE id = ?", [subject.id]
        ).fetchone()
        if exists:
            conn.execute(
                "UPDATE subjects SET display_name = ? WHERE id = ?",
                [subject.displayName, subject.id],
            )
        else:
            conn.execute(
                "INSERT INTO subjects (id, display_name, created_at) VALUES (?, ?, ?)",
                [subject.id, subject.displayName, _to_db(utcnow())],
            )
        return subject

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT id, is_group, name, group_admin_id, created_at, last_activity_at
            FROM conversations WHERE id = ?
            """,
            [conversation_id],
        ).fetchone()
        if row is None:
            return None
        participants = conn.execute(
            "SELECT subject_id FROM conversation_participants WHERE conversation_id = ?",
            [conversation_id],
        ).fetchall()
        return Conversation(
            id=row[0],
            isGroup=row[1],
            name=row[2],
            groupAdminId=row[3],
            createdAt=_from_db(row[4]),
            lastActivityAt=_from_db(row[5]),
            participantIds={p[0] for p in participants},
        )

    def is_participant(self, conversation_id: str, subject_id: str) -> bool:
        row = self._get_connection().execute(
            """
            SELECT 1 FROM conversation_participants
            WHERE conversation_id = ? AND subject_id = ?
            """,
            [conversation_id, subject_id],
        ).fetchone()
        return row is not None

    def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        self._get_connection().execute(
            """
            UPDATE conversations SET last_activity_at = ?
            WHERE id = ? AND last_activity_at < ?
            """,
            [_to_db(at), conversation_id, _to_db(at)],
        )

    def create_conversation(self, conversation: Conversation) -> Conversation:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO conversations
              (id, is_group, name, group_admin_id, created_at, last_activity_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                conversation.id,
                conversation.isGroup,
                conversation.name,
                conversation.groupAdminId,
                _to_db(conversation.createdAt),
                _to_db(conversation.lastActivityAt),
            ],
        )
        conn.executemany(
            "INSERT INTO conversation_participants (conversation_id, subject_id) VALUES (?, ?)",
            [[conversation.id, pid] for pid in sorted(conversation.participantIds)],
        )
        logger.info(
            "[ChatStore] Created conversation %s (group=%s, participants=%d)",
            conversation.id, conversation.isGroup, len(conversation.participantIds),
        )
        return conversation

    def find_direct_conversation(self, subject_a: str, subject_b: str) -> Optional[Conversation]:
        row = self._get_connection().execute(
            """
            SELECT c.id FROM conversations c
            JOIN conversation_participants pa
              ON pa.conversation_id = c.id AND pa.subject_id = ?
            JOIN conversation_participants pb
              ON pb.conversation_id = c.id AND pb.subject_id = ?
            WHERE NOT c.is_group
            LIMIT 1
            """,
            [subject_a, subject_b],
        ).fetchone()
        return self.get_conversation(row[0]) if row else None

    def list_conversations(self, subject_id: str) -> List[Conversation]:
        rows = self._get_connection().execute(
            """
            SELECT c.id FROM conversations c
            JOIN conversation_participants p ON p.conversation_id = c.id
            WHERE p.subject_id = ?
            ORDER BY c.last_activity_at DESC
            """,
            [subject_id],
        ).fetchall()
        return [self.get_conversation(r[0]) for r in rows]

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    _MESSAGE_COLUMNS = "id, conversation_id, sender_id, content, created_at, delivery_state"

    def append_message(self, message: Message) -> Message:
        self._get_connection().execute(
            """
            INSERT INTO messages
              (id, conversation_id, sender_id, content, created_at, delivery_state)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                message.id,
                message.conversationId,
                message.senderId,
                message.content,
                _to_db(message.createdAt),
                message.deliveryState.value,
            ],
        )
        for reader_id in message.readBy:
            self.add_reader(message.id, reader_id)
        return message

    def get_message(self, message_id: str) -> Optional[Message]:
        row = self._get_connection().execute(
            f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE id = ?", [message_id]
        ).fetchone()
        return self._row_to_message(row) if row else None

    def list_messages(
        self,
        conversation_id: str,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
        before_id: Optional[str] = None,
    ) -> List[Message]:
        conn = self._get_connection()
        query = f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ?"
        params: list = [conversation_id]
        if before_id is not None:
            cursor = conn.execute(
                "SELECT created_at, seq FROM messages WHERE id = ? AND conversation_id = ?",
                [before_id, conversation_id],
            ).fetchone()
            if cursor is None:
                raise KeyError(before_id)
            # Same ordering as below, so equal timestamps are not skipped
            query += " AND (created_at < ? OR (created_at = ? AND seq < ?))"
            params.extend([cursor[0], cursor[0], cursor[1]])
        if before is not None:
            query += " AND created_at < ?"
            params.append(_to_db(before))
        query += " ORDER BY created_at DESC, seq DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = conn.execute(query, params).fetchall()
        # Newest-first for the LIMIT, returned oldest-first
        return [self._row_to_message(r) for r in reversed(rows)]

    def add_reader(self, message_id: str, reader_id: str) -> bool:
        conn = self._get_connection()
        exists = conn.execute(
            "SELECT 1 FROM message_reads WHERE message_id = ? AND reader_id = ?",
            [message_id, reader_id],
        ).fetchone()
        if exists:
            return False
        conn.execute(
            "INSERT INTO message_reads (message_id, reader_id, read_at) VALUES (?, ?, ?)",
            [message_id, reader_id, _to_db(utcnow())],
        )
        return True

    def set_delivery_state(self, message_id: str, state: DeliveryState) -> DeliveryState:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT delivery_state FROM messages WHERE id = ?", [message_id]
        ).fetchone()
        if row is None:
            raise KeyError(message_id)
        current = DeliveryState(row[0])
        updated = advance(current, state)
        if updated != current:
            conn.execute(
                "UPDATE messages SET delivery_state = ? WHERE id = ?",
                [updated.value, message_id],
            )
        return updated

    def count_unread(self, conversation_id: str, subject_id: str) -> int:
        row = self._get_connection().execute(
            """
            SELECT count(*) FROM messages m
            WHERE m.conversation_id = ? AND m.sender_id <> ?
              AND NOT EXISTS (
                SELECT 1 FROM message_reads r
                WHERE r.message_id = m.id AND r.reader_id = ?
              )
            """,
            [conversation_id, subject_id, subject_id],
        ).fetchone()
        return int(row[0])

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _row_to_message(self, row) -> Message:
        readers = self._get_connection().execute(
            "SELECT reader_id FROM message_reads WHERE message_id = ?", [row[0]]
        ).fetchall()
        return Message(
            id=row[0],
            conversationId=row[1],
            senderId=row[2],
            content=row[3],
            createdAt=_from_db(row[4]),
            deliveryState=DeliveryState(row[5]),
            readBy={r[0] for r in readers},
        )
