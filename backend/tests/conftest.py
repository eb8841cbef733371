"""Shared test fixtures and configuration for backend tests."""
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from relay.auth.service import TokenVerifier
from relay.chat.engine import SessionEngine, set_engine
from relay.chat.session import Session
from relay.config import DuplicatePolicy, reset_config
from relay.main import app
from relay.store.schemas import Conversation, Subject
from relay.store.service import ChatStore

TEST_SECRET = "test-secret-key-with-enough-bytes-for-hs256"


class FakeWebSocket:
    """Records what the server sends; stands in for a Starlette WebSocket."""

    def __init__(self, fail_sends: bool = False) -> None:
        self.sent = []
        self.closed_with = None
        self.fail_sends = fail_sends

    async def send_json(self, message: dict) -> None:
        if self.fail_sends:
            raise RuntimeError("transport gone")
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)

    def types(self):
        return [m["type"] for m in self.sent]

    def of_type(self, event_type: str):
        return [m for m in self.sent if m["type"] == event_type]


@pytest.fixture
def store():
    """Fresh in-memory DuckDB store for each test."""
    s = ChatStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def verifier():
    return TokenVerifier(secret_key=TEST_SECRET)


@pytest.fixture
def make_token(verifier):
    def _make(subject_id: str, username: Optional[str] = None, **kwargs) -> str:
        return verifier.issue(subject_id, username=username or subject_id.capitalize(), **kwargs)
    return _make


@pytest.fixture
def make_chat(store):
    """Create a conversation with the given participants."""
    def _make(*participants: str, chat_id: Optional[str] = None, **kwargs) -> Conversation:
        fields = {"participantIds": set(participants), **kwargs}
        if chat_id is not None:
            fields["id"] = chat_id
        return store.create_conversation(Conversation(**fields))
    return _make


@pytest.fixture
def add_subject(store):
    def _add(subject_id: str, display_name: str) -> Subject:
        return store.save_subject(Subject(id=subject_id, displayName=display_name))
    return _add


@pytest.fixture
def engine(verifier, store):
    """Process-wide engine backed by the per-test store."""
    e = SessionEngine(
        verifier,
        subjects=store,
        conversations=store,
        messages=store,
        duplicate_policy=DuplicatePolicy.NEWEST_WINS,
        max_message_length=200,
        heartbeat_interval=30.0,
        handshake_timeout=5.0,
    )
    set_engine(e)
    yield e
    set_engine(None)
    reset_config()


@pytest.fixture
def new_session():
    """Factory for unauthenticated sessions on a FakeWebSocket."""
    def _new(fail_sends: bool = False) -> Session:
        return Session(FakeWebSocket(fail_sends=fail_sends))
    return _new


@pytest.fixture
def connect(engine, make_token, new_session):
    """Open an authenticated session on a fake transport.

    The handshake events (auth_success, online_users) are cleared from the
    returned session's transport so tests only see what follows.
    """
    async def _connect(subject_id: str, clear: bool = True) -> Session:
        session = new_session()
        await engine.authenticate(session, make_token(subject_id))
        if clear:
            session.websocket.sent.clear()
        return session
    return _connect


@pytest.fixture
def api_client(engine):
    """Provide a TestClient for the main FastAPI app, wired to the test engine.

    Not used as a context manager, so the lifespan (heartbeat task, config
    loading) does not run.
    """
    return TestClient(app)
