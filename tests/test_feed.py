"""Tests for feed sync."""

import asyncio

import pytest

from comrade_circle.backend import Query
from comrade_circle.core.errors import NetworkError, NotAuthenticated, ValidationError
from comrade_circle.core.notifications import NotificationLevel
from comrade_circle.sync.feed import FeedSync


@pytest.fixture
async def feed(backend, session, notifier):
    feed_sync = FeedSync(backend, session, notifier)
    yield feed_sync
    await feed_sync.stop()


class TestFeedLoading:
    """Tests for refresh and change-driven refetch."""

    @pytest.mark.asyncio
    async def test_start_loads_with_nicknames(self, feed, identity, seed_posts):
        seed_posts("first", "second")

        await feed.start()

        assert [p.content for p in feed.posts] == ["second", "first"]
        assert {p.author_nickname for p in feed.posts} == {"Bob"}
        assert feed.loading is False
        assert feed.channel is not None

    @pytest.mark.asyncio
    async def test_refetches_on_any_change(self, feed, backend, identity, other_user):
        """Insert, update and delete should each trigger a refetch."""
        await feed.start()
        base = feed.refresh_count

        row = await backend.insert("posts", {"user_id": other_user["id"], "content": "new"})
        await backend.drain()
        assert [p.content for p in feed.posts] == ["new"]

        await backend.update(Query("posts").eq("id", row["id"]), {"content": "edited"})
        await backend.drain()
        assert feed.posts[0].content == "edited"

        await backend.delete(Query("posts").eq("id", row["id"]))
        await backend.drain()
        assert feed.posts == []
        assert feed.refresh_count == base + 3

    @pytest.mark.asyncio
    async def test_superseded_refresh_is_dropped(self, feed, backend, identity, seed_posts):
        """A slow refresh finishing after a newer one must not overwrite it."""
        seed_posts("old")
        gate = asyncio.Event()
        original_fetch = backend.fetch
        posts_fetches = []

        async def gated_fetch(query):
            rows = await original_fetch(query)
            if query.table == "posts":
                posts_fetches.append(len(rows))
                if len(posts_fetches) == 1:
                    await gate.wait()
            return rows

        backend.fetch = gated_fetch

        slow = asyncio.create_task(feed.refresh())
        await asyncio.sleep(0.01)
        backend.seed("posts", {
            "user_id": "user-bob", "content": "fresh", "created_at": "2026-02-01T00:00:00.000000+00:00",
        })
        await feed.refresh()
        gate.set()
        await slow

        assert [p.content for p in feed.posts] == ["fresh", "old"]
        assert feed.refresh_count == 1

    @pytest.mark.asyncio
    async def test_refresh_failure_notifies(self, feed, backend, notifier):
        backend.fail_next("fetch", table="posts")

        assert await feed.refresh() == []
        assert notifier.messages(NotificationLevel.ERROR) == ["Failed to load the feed"]
        assert feed.loading is False

    @pytest.mark.asyncio
    async def test_stop_closes_channel(self, feed, backend, identity):
        await feed.start()
        await feed.stop()

        assert backend.open_channels == []


class TestFeedLikes:
    """Tests for optimistic likes."""

    @pytest.mark.asyncio
    async def test_like_updates_counter(self, feed, backend, identity, seed_posts):
        post = seed_posts("hello")[0]
        await feed.start()

        outcome = await feed.like(post["id"])
        await backend.drain()

        assert outcome.succeeded
        assert feed.posts[0].has_liked is True
        assert feed.posts[0].likes_count == 1
        assert backend.tables["posts"][0]["likes_count"] == 1

        await feed.unlike(post["id"])
        await backend.drain()
        assert feed.posts[0].has_liked is False
        assert feed.posts[0].likes_count == 0
        assert backend.tables["post_likes"] == []

    @pytest.mark.asyncio
    async def test_like_rollback(self, feed, backend, identity, notifier, seed_posts):
        """A failed like should restore the post and notify once."""
        post = seed_posts("hello")[0]
        await feed.start()
        backend.fail_next("insert", table="post_likes")

        outcome = await feed.like(post["id"])

        assert not outcome.succeeded
        assert feed.posts[0].has_liked is False
        assert feed.posts[0].likes_count == 0
        assert notifier.messages(NotificationLevel.ERROR) == ["Failed to update like. Please try again."]

    @pytest.mark.asyncio
    async def test_counter_failure_leaves_no_like(self, feed, backend, identity, seed_posts):
        post = seed_posts("hello")[0]
        await feed.start()
        backend.fail_next("update", table="posts")

        outcome = await feed.like(post["id"])
        await backend.drain()

        assert not outcome.succeeded
        assert backend.tables["post_likes"] == []
        assert feed.posts[0].has_liked is False

    @pytest.mark.asyncio
    async def test_double_toggle(self, feed, backend, identity, seed_posts):
        """Two rapid toggles should end where they started."""
        post = seed_posts("hello")[0]
        await feed.start()

        first, second = await asyncio.gather(feed.toggle_like(post["id"]), feed.toggle_like(post["id"]))
        await backend.drain()

        assert first.acted is True
        assert second.acted is False
        assert feed.posts[0].likes_count == 0
        assert backend.tables["post_likes"] == []

    @pytest.mark.asyncio
    async def test_like_requires_session(self, feed, notifier, seed_posts):
        post = seed_posts("hello")[0]
        await feed.start()

        outcome = await feed.like(post["id"])

        assert not outcome.succeeded
        assert notifier.messages(NotificationLevel.ERROR) == ["Sign in to like posts"]

    @pytest.mark.asyncio
    async def test_liked_state_from_server(self, feed, backend, identity, seed_posts):
        post = seed_posts("hello")[0]
        backend.seed("post_likes", {"post_id": post["id"], "user_id": identity.id})

        await feed.start()

        assert feed.posts[0].has_liked is True


class TestFeedPosting:
    """Tests for create_post and add_comment."""

    @pytest.mark.asyncio
    async def test_create_post_appears_via_refetch(self, feed, backend, identity):
        await feed.start()

        post = await feed.create_post("  hi all  ")
        await backend.drain()

        assert post.content == "hi all"
        assert [p.id for p in feed.posts] == [post.id]
        assert feed.posts[0].author_nickname == "Ada"

    @pytest.mark.asyncio
    async def test_create_post_validation(self, feed, backend, identity):
        with pytest.raises(ValidationError):
            await feed.create_post("   ")
        assert backend.count_calls("insert", "posts") == 0

    @pytest.mark.asyncio
    async def test_create_post_failure(self, feed, backend, identity, notifier):
        backend.fail_next("insert", table="posts")

        with pytest.raises(NetworkError):
            await feed.create_post("hello")
        assert notifier.messages(NotificationLevel.ERROR) == ["Failed to publish post"]

    @pytest.mark.asyncio
    async def test_add_comment_recounts(self, feed, backend, identity, seed_posts):
        post = seed_posts("hello")[0]
        await feed.start()

        await feed.add_comment(post["id"], "nice")
        await feed.add_comment(post["id"], "agreed")
        await backend.drain()

        assert backend.tables["posts"][0]["comments_count"] == 2
        assert feed.posts[0].comments_count == 2

    @pytest.mark.asyncio
    async def test_create_post_requires_session(self, feed, backend, notifier):
        """Posting signed out should notify exactly once."""
        with pytest.raises(NotAuthenticated):
            await feed.create_post("hello")

        assert notifier.messages(NotificationLevel.ERROR) == ["Sign in to post"]
        assert backend.count_calls("insert", "posts") == 0

    @pytest.mark.asyncio
    async def test_add_comment_requires_session(self, feed, notifier):
        with pytest.raises(NotAuthenticated):
            await feed.add_comment("p1", "nice")
        assert notifier.messages(NotificationLevel.ERROR) == ["Sign in to comment"]

    @pytest.mark.asyncio
    async def test_comment_too_long(self, feed, identity):
        with pytest.raises(ValidationError):
            await feed.add_comment("p1", "x" * 501)
