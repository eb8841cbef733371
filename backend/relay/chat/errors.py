"""Error taxonomy for the session protocol.

Every error carries the message that is sent back to the client in an
``error`` event. ``AuthenticationFailed`` and ``DuplicateConnection`` are
fatal for the connection (closed with ``close_code``); the others reject
a single event and leave the connection open.
"""

# WebSocket close codes used by the relay
CLOSE_POLICY_VIOLATION = 1008
CLOSE_GOING_AWAY = 1001
CLOSE_SUPERSEDED = 4000


class RelayError(Exception):
    """Base exception for protocol errors reported to the client."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AuthenticationFailed(RelayError):
    """Raised when a credential is missing, invalid or expired."""
    close_code = CLOSE_POLICY_VIOLATION

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message)


class DuplicateConnection(RelayError):
    """Raised when the subject already has a live connection under reject_new."""
    close_code = CLOSE_POLICY_VIOLATION

    def __init__(self, subject_id: str):
        self.subject_id = subject_id
        super().__init__("Already connected from another session")


class Unauthorized(RelayError):
    """Raised when the subject is not a participant of the conversation."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Not authorized for chat {conversation_id}")


class NotInRoom(RelayError):
    """Raised when an action needs a prior join_chat for the conversation."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Join chat {conversation_id} before sending messages")


class MalformedInput(RelayError):
    """Raised for unparseable frames, unknown types and invalid payloads."""


class MessageNotFound(RelayError):
    """Raised when a read receipt names an unknown message."""
    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found")
