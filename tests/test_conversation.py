"""
Tests for conversation sync.

Tests cover:
- Idempotent conversation resolution and racing creators
- History loading and live delivery
- Channel lifecycle when switching conversations
- Send validation and failure handling
"""

import asyncio

import pytest

from comrade_circle.backend import ChangeEvent, EventType, Query
from comrade_circle.core.errors import NetworkError, NotAuthenticated, ValidationError
from comrade_circle.core.notifications import NotificationLevel
from comrade_circle.sync.conversation import ConversationSync, pair_filters


@pytest.fixture
async def sync(backend, session, notifier):
    conversation_sync = ConversationSync(backend, session, notifier)
    yield conversation_sync
    await conversation_sync.close()


# ====================
# Resolution Tests
# ====================

class TestResolveConversation:
    """Tests for ConversationSync.resolve_conversation."""

    @pytest.mark.asyncio
    async def test_creates_once(self, sync, backend):
        """Resolving the same pair twice, in either order, should return one id."""
        first = await sync.resolve_conversation("ada", "bob")
        second = await sync.resolve_conversation("ada", "bob")
        reverse = await sync.resolve_conversation("bob", "ada")

        assert first == second == reverse
        assert len(backend.tables["conversations"]) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creators_converge(self, backend, session):
        """Two clients racing to create should agree on the same conversation."""
        client_a = ConversationSync(backend, session)
        client_b = ConversationSync(backend, session)

        id_a, id_b = await asyncio.gather(
            client_a.resolve_conversation("ada", "bob"),
            client_b.resolve_conversation("bob", "ada"),
        )

        assert id_a == id_b
        # Later lookups keep returning the same one
        assert await client_a.resolve_conversation("ada", "bob") == id_a

    @pytest.mark.asyncio
    async def test_prefers_oldest_existing(self, sync, backend):
        backend.seed(
            "conversations",
            {"id": "newer", "user1_id": "ada", "user2_id": "bob", "created_at": "2026-02-01T00:00:00+00:00"},
            {"id": "older", "user1_id": "bob", "user2_id": "ada", "created_at": "2026-01-01T00:00:00+00:00"},
        )
        assert await sync.resolve_conversation("ada", "bob") == "older"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("a,b", [("", "bob"), ("ada", ""), ("ada", "ada")])
    async def test_invalid_pairs(self, sync, backend, a, b):
        with pytest.raises(ValidationError):
            await sync.resolve_conversation(a, b)
        assert backend.count_calls("insert") == 0

    def test_pair_filters_cover_both_orders(self):
        orders = [[(f.column, f.value) for f in alt] for alt in pair_filters("a", "b")]
        assert orders == [
            [("user1_id", "a"), ("user2_id", "b")],
            [("user1_id", "b"), ("user2_id", "a")],
        ]


# ====================
# Live Sync Tests
# ====================

class TestConversationLive:
    """Tests for select/send/live delivery."""

    @pytest.mark.asyncio
    async def test_send_appears_exactly_once(self, sync, backend, identity, other_user):
        """A sent message should arrive via the channel once, and be in history once."""
        conversation_id = await sync.open_with(other_user["id"])

        await sync.send(conversation_id, "hello bob")
        await backend.drain()

        assert [m.content for m in sync.messages] == ["hello bob"]
        assert sync.messages[0].sender_nickname == "Ada"

        history = await sync.load_history(conversation_id)
        assert [m.content for m in history] == ["hello bob"]

    @pytest.mark.asyncio
    async def test_messages_keep_order(self, sync, backend, identity, other_user):
        conversation_id = await sync.open_with(other_user["id"])

        for text in ["one", "two", "three"]:
            await sync.send(conversation_id, text)
        await backend.insert("messages", {
            "conversation_id": conversation_id, "sender_id": other_user["id"], "content": "four",
        })
        await backend.drain()

        assert [m.content for m in sync.messages] == ["one", "two", "three", "four"]
        assert sync.messages[-1].sender_nickname == "Bob"

    @pytest.mark.asyncio
    async def test_select_loads_history(self, sync, backend, identity, other_user):
        backend.seed(
            "messages",
            {"id": "m2", "conversation_id": "c1", "sender_id": "user-bob", "content": "later",
             "created_at": "2026-01-02T00:00:00+00:00"},
            {"id": "m1", "conversation_id": "c1", "sender_id": identity.id, "content": "first",
             "created_at": "2026-01-01T00:00:00+00:00"},
            {"id": "m3", "conversation_id": "c2", "sender_id": identity.id, "content": "elsewhere"},
        )

        await sync.select("c1")

        assert [m.id for m in sync.messages] == ["m1", "m2"]
        assert [m.sender_nickname for m in sync.messages] == ["Ada", "Bob"]
        assert sync.current_conversation_id == "c1"

    @pytest.mark.asyncio
    async def test_switching_closes_previous_channel(self, sync, backend, identity):
        """Exactly one channel should be open; the old one gets nothing further."""
        await sync.select("c1")
        first_channel = sync.channel
        await sync.select("c2")

        assert first_channel.closed
        assert backend.open_channels == [sync.channel]

        await backend.insert("messages", {"conversation_id": "c1", "sender_id": "user-bob", "content": "late"})
        await backend.drain()
        assert sync.messages == []

    @pytest.mark.asyncio
    async def test_stale_sender_lookup_is_discarded(self, sync, backend, identity):
        """A message whose sender lookup completes after a switch should be dropped."""
        await sync.select("c1")
        handler = sync._make_handler("c1", sync._generation)

        async def slow_lookup(user_id):
            await sync.select("c2")
            return "Bob"

        sync._lookup_nickname = slow_lookup
        await handler(ChangeEvent("messages", EventType.INSERT, new={
            "id": "m1", "conversation_id": "c1", "sender_id": "user-bob", "content": "stale",
        }))

        assert sync.current_conversation_id == "c2"
        assert sync.messages == []

    @pytest.mark.asyncio
    async def test_duplicate_delivery_ignored(self, sync, identity):
        await sync.select("c1")
        handler = sync._make_handler("c1", sync._generation)
        event = ChangeEvent("messages", EventType.INSERT, new={
            "id": "m1", "conversation_id": "c1", "sender_id": identity.id, "content": "hi",
        })

        await handler(event)
        await handler(event)

        assert len(sync.messages) == 1

    @pytest.mark.asyncio
    async def test_listeners_notified(self, sync, backend, identity, other_user):
        snapshots = []
        sync.subscribe(lambda messages: snapshots.append(len(messages)))

        conversation_id = await sync.open_with(other_user["id"])
        await sync.send(conversation_id, "hi")
        await backend.drain()

        assert snapshots[-1] == 1

    @pytest.mark.asyncio
    async def test_close_removes_channel(self, sync, backend, identity):
        await sync.select("c1")
        await sync.close()

        assert backend.open_channels == []
        assert sync.current_conversation_id is None

    @pytest.mark.asyncio
    async def test_open_with_self_notifies(self, sync, identity, notifier):
        assert await sync.open_with(identity.id) is None
        assert notifier.messages(NotificationLevel.ERROR) == ["Cannot start a conversation with yourself"]


# ====================
# Send Tests
# ====================

class TestSend:
    """Tests for ConversationSync.send."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", "x" * 1001])
    async def test_invalid_content_makes_no_call(self, sync, backend, identity, content):
        with pytest.raises(ValidationError):
            await sync.send("c1", content)
        assert backend.count_calls("insert", "messages") == 0

    @pytest.mark.asyncio
    async def test_content_is_trimmed(self, sync, backend, identity):
        await sync.send("c1", "  hi  ")
        assert backend.tables["messages"][0]["content"] == "hi"

    @pytest.mark.asyncio
    async def test_requires_session(self, sync, backend, notifier):
        """Sending signed out should notify exactly once and make no call."""
        with pytest.raises(NotAuthenticated):
            await sync.send("c1", "hi")

        assert notifier.messages(NotificationLevel.ERROR) == ["Sign in to send messages"]
        assert backend.count_calls("insert", "messages") == 0

    @pytest.mark.asyncio
    async def test_open_with_requires_session(self, sync, backend, notifier, other_user):
        assert await sync.open_with(other_user["id"]) is None
        assert notifier.messages(NotificationLevel.ERROR) == ["Sign in to message comrades"]
        assert backend.count_calls("insert", "conversations") == 0

    @pytest.mark.asyncio
    async def test_failure_notifies_and_raises(self, sync, backend, identity, notifier):
        backend.fail_next("insert", table="messages")

        with pytest.raises(NetworkError):
            await sync.send("c1", "hi")

        assert notifier.messages(NotificationLevel.ERROR) == ["Failed to send message"]
        assert backend.tables["messages"] == []

    @pytest.mark.asyncio
    async def test_touches_conversation(self, sync, backend, identity):
        backend.seed("conversations", {
            "id": "c1", "user1_id": identity.id, "user2_id": "user-bob",
            "created_at": "2000-01-01T00:00:00+00:00", "updated_at": "2000-01-01T00:00:00+00:00",
        })
        await sync.send("c1", "hi")

        row = await backend.fetch_one(Query("conversations").eq("id", "c1"))
        assert row["updated_at"] > "2000-01-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_custom_limit(self, backend, session, identity):
        short = ConversationSync(backend, session, max_message_length=5)
        with pytest.raises(ValidationError):
            short.validate_content("123456")
        assert short.validate_content("12345") == "12345"


# ====================
# Conversation List Tests
# ====================

class TestConversationList:
    """Tests for fetch_conversations and mark_read."""

    @pytest.mark.asyncio
    async def test_fetch_conversations(self, sync, backend, identity, other_user):
        backend.seed("conversations", {
            "id": "c1", "user1_id": other_user["id"], "user2_id": identity.id,
            "created_at": "2026-01-01T00:00:00+00:00", "updated_at": "2026-01-03T00:00:00+00:00",
        })
        backend.seed(
            "messages",
            {"conversation_id": "c1", "sender_id": "user-bob", "content": "old",
             "created_at": "2026-01-01T00:00:00+00:00"},
            {"conversation_id": "c1", "sender_id": "user-bob", "content": "newest",
             "created_at": "2026-01-02T00:00:00+00:00"},
        )

        conversations = await sync.fetch_conversations()

        assert len(conversations) == 1
        assert conversations[0].other_user_nickname == "Bob"
        assert conversations[0].last_message == "newest"
        assert sync.loading is False

    @pytest.mark.asyncio
    async def test_fetch_conversations_signed_out(self, sync):
        assert await sync.fetch_conversations() == []

    @pytest.mark.asyncio
    async def test_mark_read(self, sync, backend, identity):
        backend.seed(
            "messages",
            {"id": "m1", "conversation_id": "c1", "sender_id": "user-bob", "content": "a"},
            {"id": "m2", "conversation_id": "c1", "sender_id": identity.id, "content": "b"},
        )
        await sync.select("c1")

        assert await sync.mark_read("c1") == 1
        assert {m.id: m.read for m in sync.messages} == {"m1": True, "m2": False}
