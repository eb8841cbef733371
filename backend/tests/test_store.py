"""Tests for the DuckDB chat store."""
from datetime import datetime, timedelta, timezone

import pytest

from relay.store.schemas import Conversation, DeliveryState, Message, Subject
from relay.store.service import ChatStore


def _message(chat_id="c1", sender="alice", content="hi", at=None, **kwargs):
    fields = dict(conversationId=chat_id, senderId=sender, content=content, **kwargs)
    if at is not None:
        fields["createdAt"] = at
    return Message(**fields)


class TestSingleton:
    def test_get_instance_returns_same_store(self):
        ChatStore.reset_instance()
        try:
            first = ChatStore.get_instance(":memory:")
            assert ChatStore.get_instance() is first
        finally:
            ChatStore.reset_instance()
        assert ChatStore._instance is None

    def test_file_database_persists(self, tmp_path):
        db_path = str(tmp_path / "relay.duckdb")
        s = ChatStore(db_path)
        s.save_subject(Subject(id="alice", displayName="Alice"))
        s.close()

        reopened = ChatStore(db_path)
        assert reopened.get_subject("alice").displayName == "Alice"
        reopened.close()


class TestSubjects:
    def test_save_and_get(self, store):
        store.save_subject(Subject(id="alice", displayName="Alice"))
        assert store.get_subject("alice") == Subject(id="alice", displayName="Alice")

    def test_save_updates_display_name(self, store):
        store.save_subject(Subject(id="alice", displayName="Alice"))
        store.save_subject(Subject(id="alice", displayName="Alice L."))
        assert store.get_subject("alice").displayName == "Alice L."

    def test_unknown_subject(self, store):
        assert store.get_subject("ghost") is None


class TestConversations:
    def test_create_and_get(self, store):
        created = store.create_conversation(Conversation(
            id="g1", participantIds={"alice", "bob", "carol"},
            isGroup=True, name="Team", groupAdminId="alice",
        ))
        loaded = store.get_conversation("g1")
        assert loaded.participantIds == {"alice", "bob", "carol"}
        assert loaded.isGroup is True
        assert loaded.name == "Team"
        assert loaded.groupAdminId == "alice"
        assert loaded.createdAt == created.createdAt
        assert loaded.createdAt.tzinfo is not None

    def test_conversation_needs_two_participants(self):
        with pytest.raises(ValueError):
            Conversation(participantIds={"alice"})

    def test_is_participant(self, store, make_chat):
        make_chat("alice", "bob", chat_id="c1")
        assert store.is_participant("c1", "alice")
        assert not store.is_participant("c1", "carol")
        assert not store.is_participant("nope", "alice")

    def test_find_direct_conversation_ignores_groups(self, store, make_chat):
        make_chat("alice", "bob", "carol", chat_id="g1", isGroup=True, name="Team")
        assert store.find_direct_conversation("alice", "bob") is None

        make_chat("alice", "bob", chat_id="c1")
        assert store.find_direct_conversation("bob", "alice").id == "c1"

    def test_list_conversations_most_recent_first(self, store, make_chat):
        make_chat("alice", "bob", chat_id="c1")
        make_chat("alice", "carol", chat_id="c2")
        make_chat("bob", "carol", chat_id="c3")
        store.touch_conversation("c1", datetime.now(timezone.utc) + timedelta(minutes=5))

        assert [c.id for c in store.list_conversations("alice")] == ["c1", "c2"]

    def test_touch_never_moves_backwards(self, store, make_chat):
        chat = make_chat("alice", "bob", chat_id="c1")
        later = chat.lastActivityAt + timedelta(minutes=1)
        store.touch_conversation("c1", later)
        store.touch_conversation("c1", chat.lastActivityAt)
        assert store.get_conversation("c1").lastActivityAt == later


class TestMessages:
    def test_append_and_get(self, store):
        message = store.append_message(_message(content="hello"))
        loaded = store.get_message(message.id)
        assert loaded.content == "hello"
        assert loaded.deliveryState == DeliveryState.SENT
        assert loaded.readBy == set()

    def test_get_unknown(self, store):
        assert store.get_message("nope") is None

    def test_list_is_oldest_first_and_paginated(self, store):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(5):
            store.append_message(_message(content=f"m{i}", at=base + timedelta(seconds=i)))

        assert [m.content for m in store.list_messages("c1")] == ["m0", "m1", "m2", "m3", "m4"]
        assert [m.content for m in store.list_messages("c1", limit=2)] == ["m3", "m4"]
        older = store.list_messages("c1", before=base + timedelta(seconds=3), limit=2)
        assert [m.content for m in older] == ["m1", "m2"]

    def test_list_keeps_insertion_order_for_equal_timestamps(self, store):
        at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(3):
            store.append_message(_message(content=f"m{i}", at=at))
        assert [m.content for m in store.list_messages("c1")] == ["m0", "m1", "m2"]

    def test_before_id_is_exact_for_equal_timestamps(self, store):
        at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        messages = [store.append_message(_message(content=f"m{i}", at=at)) for i in range(4)]

        older = store.list_messages("c1", before_id=messages[2].id, limit=5)
        assert [m.content for m in older] == ["m0", "m1"]
        # A time cursor drops every message at that instant
        assert store.list_messages("c1", before=at) == []

    def test_before_id_must_belong_to_conversation(self, store):
        with pytest.raises(KeyError):
            store.list_messages("c1", before_id="nope")

    def test_add_reader_once(self, store):
        message = store.append_message(_message())
        assert store.add_reader(message.id, "bob") is True
        assert store.add_reader(message.id, "bob") is False
        assert store.get_message(message.id).readBy == {"bob"}

    def test_delivery_state_is_monotonic(self, store):
        message = store.append_message(_message())
        assert store.set_delivery_state(message.id, DeliveryState.READ) == DeliveryState.READ
        assert store.set_delivery_state(message.id, DeliveryState.DELIVERED) == DeliveryState.READ
        assert store.get_message(message.id).deliveryState == DeliveryState.READ

    def test_delivery_state_unknown_message(self, store):
        with pytest.raises(KeyError):
            store.set_delivery_state("nope", DeliveryState.READ)

    def test_count_unread_is_per_reader(self, store):
        first = store.append_message(_message(sender="alice"))
        store.append_message(_message(sender="alice"))
        store.append_message(_message(sender="bob"))
        store.add_reader(first.id, "bob")

        assert store.count_unread("c1", "bob") == 1
        assert store.count_unread("c1", "carol") == 3
        assert store.count_unread("c1", "alice") == 1
