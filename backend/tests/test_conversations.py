"""Tests for the conversations HTTP endpoints (chat list, creation, history)."""
from datetime import datetime, timedelta, timezone

import pytest

from relay.store.schemas import DeliveryState, Message


@pytest.fixture
def auth(make_token):
    def _auth(subject_id: str) -> dict:
        return {"Authorization": f"Bearer {make_token(subject_id)}"}
    return _auth


def _post(store, chat_id, sender, content, at, **kwargs):
    return store.append_message(Message(
        conversationId=chat_id, senderId=sender, content=content, createdAt=at, **kwargs
    ))


class TestListChats:
    def test_lists_only_callers_chats(self, api_client, auth, make_chat):
        make_chat("alice", "bob", chat_id="c1")
        make_chat("bob", "carol", chat_id="c2")

        response = api_client.get("/api/chats", headers=auth("alice"))

        assert response.status_code == 200
        assert [c["id"] for c in response.json()] == ["c1"]

    def test_direct_chat_named_after_other_participant(self, api_client, auth, make_chat, add_subject):
        add_subject("bob", "Bob Builder")
        make_chat("alice", "bob", chat_id="c1")
        make_chat("alice", "dave", chat_id="c2")

        chats = {c["id"]: c for c in api_client.get("/api/chats", headers=auth("alice")).json()}

        assert chats["c1"]["name"] == "Bob Builder"
        assert chats["c1"]["isGroup"] is False
        assert chats["c1"]["participants"] == ["alice", "bob"]
        # Unknown subject falls back to its id
        assert chats["c2"]["name"] == "dave"

    def test_last_message_and_unread_count(self, api_client, auth, make_chat, store):
        make_chat("alice", "bob", chat_id="c1")
        base = datetime.now(timezone.utc)
        first = _post(store, "c1", "bob", "one", base)
        _post(store, "c1", "bob", "two", base + timedelta(seconds=1))
        last = _post(store, "c1", "alice", "three", base + timedelta(seconds=2))
        store.add_reader(first.id, "alice")

        [chat] = api_client.get("/api/chats", headers=auth("alice")).json()

        assert chat["lastMessage"]["id"] == last.id
        assert chat["lastMessage"]["content"] == "three"
        assert chat["lastMessage"]["status"] == "sent"
        assert chat["unreadCount"] == 1

    def test_group_chat_summary(self, api_client, auth, make_chat):
        make_chat("alice", "bob", "carol", chat_id="g1", isGroup=True, name="Team", groupAdminId="alice")

        [chat] = api_client.get("/api/chats", headers=auth("bob")).json()

        assert chat["name"] == "Team"
        assert chat["isGroup"] is True
        assert chat["groupAdmin"] == "alice"
        assert chat["lastMessage"] is None
        assert chat["unreadCount"] == 0


class TestCreateChat:
    def test_create_direct_chat(self, api_client, auth, store):
        response = api_client.post("/api/chats", json={"receiverId": "bob"}, headers=auth("alice"))

        assert response.status_code == 201
        body = response.json()
        assert body["participants"] == ["alice", "bob"]
        assert body["isGroup"] is False
        assert store.is_participant(body["id"], "bob")

    def test_existing_direct_chat_is_returned(self, api_client, auth, make_chat):
        make_chat("alice", "bob", chat_id="c1")

        response = api_client.post("/api/chats", json={"receiverId": "alice"}, headers=auth("bob"))

        assert response.status_code == 200
        assert response.json()["id"] == "c1"

    @pytest.mark.parametrize("body", [{}, {"receiverId": ""}, {"receiverId": "alice"}])
    def test_direct_chat_needs_another_receiver(self, api_client, auth, body):
        response = api_client.post("/api/chats", json=body, headers=auth("alice"))
        assert response.status_code == 400
        assert response.json()["detail"] == "Receiver ID is required"

    def test_create_group_with_caller_as_admin(self, api_client, auth, store):
        response = api_client.post(
            "/api/chats",
            json={"isGroup": True, "name": "Team", "participants": ["bob", "carol", "bob"]},
            headers=auth("alice"),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["name"] == "Team"
        assert body["groupAdmin"] == "alice"
        assert body["participants"] == ["alice", "bob", "carol"]
        assert store.get_conversation(body["id"]).isGroup is True

    @pytest.mark.parametrize("body", [
        {"isGroup": True, "participants": ["bob"]},
        {"isGroup": True, "name": "Team", "participants": []},
        {"isGroup": True, "name": "Solo", "participants": ["alice"]},
    ])
    def test_invalid_group(self, api_client, auth, body):
        response = api_client.post("/api/chats", json=body, headers=auth("alice"))
        assert response.status_code == 400


class TestMessageHistory:
    def test_history_oldest_first(self, api_client, auth, make_chat, store):
        make_chat("alice", "bob", chat_id="c1")
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(3):
            _post(store, "c1", "alice", f"m{i}", base + timedelta(seconds=i))

        response = api_client.get("/api/messages/c1", headers=auth("bob"))

        assert response.status_code == 200
        body = response.json()
        assert [m["content"] for m in body["messages"]] == ["m0", "m1", "m2"]
        assert body["messages"][0]["sender"] == "alice"
        assert body["messages"][0]["chatId"] == "c1"
        assert body["hasMore"] is False

    def test_history_pagination(self, api_client, auth, make_chat, store):
        make_chat("alice", "bob", chat_id="c1")
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(5):
            _post(store, "c1", "alice", f"m{i}", base + timedelta(seconds=i))

        page = api_client.get("/api/messages/c1?limit=2", headers=auth("bob")).json()
        assert [m["content"] for m in page["messages"]] == ["m3", "m4"]
        assert page["hasMore"] is True

        cursor = page["messages"][0]["timestamp"]
        older = api_client.get(
            "/api/messages/c1", params={"limit": 2, "before": cursor}, headers=auth("bob")
        ).json()
        assert [m["content"] for m in older["messages"]] == ["m1", "m2"]
        assert older["hasMore"] is True

    def test_before_id_cursor_keeps_equal_timestamps(self, api_client, auth, make_chat, store):
        make_chat("alice", "bob", chat_id="c1")
        at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(5):
            _post(store, "c1", "alice", f"m{i}", at)

        page = api_client.get("/api/messages/c1?limit=2", headers=auth("bob")).json()
        assert [m["content"] for m in page["messages"]] == ["m3", "m4"]

        seen = [m["content"] for m in page["messages"]]
        while page["hasMore"]:
            page = api_client.get(
                "/api/messages/c1",
                params={"limit": 2, "beforeId": page["messages"][0]["id"]},
                headers=auth("bob"),
            ).json()
            seen = [m["content"] for m in page["messages"]] + seen

        assert seen == ["m0", "m1", "m2", "m3", "m4"]

    def test_before_id_from_another_chat(self, api_client, auth, make_chat, store):
        make_chat("alice", "bob", chat_id="c1")
        make_chat("alice", "carol", chat_id="c2")
        other = _post(store, "c2", "alice", "elsewhere", datetime.now(timezone.utc))

        response = api_client.get(
            "/api/messages/c1", params={"beforeId": other.id}, headers=auth("alice")
        )

        assert response.status_code == 400

    def test_history_includes_read_state(self, api_client, auth, make_chat, store):
        make_chat("alice", "bob", chat_id="c1")
        message = _post(
            store, "c1", "alice", "hi", datetime.now(timezone.utc),
            deliveryState=DeliveryState.READ,
        )
        store.add_reader(message.id, "bob")

        [entry] = api_client.get("/api/messages/c1", headers=auth("alice")).json()["messages"]

        assert entry["status"] == "read"
        assert entry["readBy"] == ["bob"]

    def test_unknown_chat(self, api_client, auth):
        response = api_client.get("/api/messages/nope", headers=auth("alice"))
        assert response.status_code == 404

    def test_non_participant(self, api_client, auth, make_chat):
        make_chat("alice", "bob", chat_id="c1")
        response = api_client.get("/api/messages/c1", headers=auth("mallory"))
        assert response.status_code == 403

    @pytest.mark.parametrize("limit", [0, 101])
    def test_limit_bounds(self, api_client, auth, make_chat, limit):
        make_chat("alice", "bob", chat_id="c1")
        response = api_client.get(f"/api/messages/c1?limit={limit}", headers=auth("alice"))
        assert response.status_code == 422


class TestSendMessage:
    def test_send_message(self, api_client, auth, make_chat, store):
        make_chat("alice", "bob", chat_id="c1")

        response = api_client.post(
            "/api/messages", json={"chatId": "c1", "content": " hi "}, headers=auth("alice")
        )

        assert response.status_code == 201
        body = response.json()
        assert body["chatId"] == "c1"
        assert body["sender"] == "alice"
        assert body["content"] == " hi "
        assert body["status"] == "sent"
        assert [m.id for m in store.list_messages("c1")] == [body["id"]]

    def test_sent_message_shows_up_in_chat_list(self, api_client, auth, make_chat):
        make_chat("alice", "bob", chat_id="c1")
        api_client.post("/api/messages", json={"chatId": "c1", "content": "ping"}, headers=auth("alice"))

        [chat] = api_client.get("/api/chats", headers=auth("bob")).json()

        assert chat["lastMessage"]["content"] == "ping"
        assert chat["unreadCount"] == 1

    def test_unknown_chat(self, api_client, auth):
        response = api_client.post(
            "/api/messages", json={"chatId": "nope", "content": "hi"}, headers=auth("alice")
        )
        assert response.status_code == 404
        assert response.json()["detail"] == "Chat not found"

    def test_non_participant(self, api_client, auth, make_chat, store):
        make_chat("alice", "bob", chat_id="c1")
        response = api_client.post(
            "/api/messages", json={"chatId": "c1", "content": "hi"}, headers=auth("mallory")
        )
        assert response.status_code == 403
        assert store.list_messages("c1") == []

    @pytest.mark.parametrize("content", ["", "   ", "x" * 201])
    def test_invalid_content(self, api_client, auth, make_chat, content):
        make_chat("alice", "bob", chat_id="c1")
        response = api_client.post(
            "/api/messages", json={"chatId": "c1", "content": content}, headers=auth("alice")
        )
        assert response.status_code == 400
