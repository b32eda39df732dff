"""
Feed sync for the global post feed.

Posts and author nicknames are fetched separately and joined in the
client. A channel on the posts table triggers a full refetch on any
insert, update or delete, so the local list always converges to server
truth after each change.
"""

import logging
from typing import Callable, Dict, List, Optional, Set

from ..backend.base import Backend, ChangeEvent, Channel, EventType, Query
from ..core.config import settings
from ..core.errors import ComradeError, ValidationError, translate_backend_error
from ..core.notifications import BaseNotifier, LogNotifier
from ..models import Comment, FeedPost
from ..session import SessionStore
from .optimistic import JoinCounter, OptimisticToggle, ToggleOutcome

logger = logging.getLogger(__name__)

POST_LIKES = JoinCounter(
    join_table="post_likes",
    subject_column="post_id",
    actor_column="user_id",
    counter_table="posts",
    counter_column="likes_count",
)

FeedListener = Callable[[List[FeedPost]], None]


class FeedSync:
    """
    Keeps the post feed in sync by refetching on every change event.

    Overlapping refreshes resolve latest-wins: a refresh that completes
    after a newer one started is dropped.
    """

    def __init__(
        self,
        backend: Backend,
        session: SessionStore,
        notifier: Optional[BaseNotifier] = None,
    ):
        self.backend = backend
        self.session = session
        self.notifier = notifier or LogNotifier()

        self.posts: List[FeedPost] = []
        self.loading = True
        self.refresh_count = 0

        self._channel: Optional[Channel] = None
        self._generation = 0
        self._closed = False
        self._listeners: List[FeedListener] = []
        self._likes = OptimisticToggle(self.notifier, "Failed to update like. Please try again.")

    async def __aenter__(self) -> "FeedSync":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def channel(self) -> Optional[Channel]:
        return self._channel

    def subscribe(self, listener: FeedListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.posts)
            except Exception as e:
                logger.error(f"Feed listener failed: {e}")

    def _report(self, exc: Exception, message: str) -> ComradeError:
        error = translate_backend_error(exc)
        logger.error(f"{message}: {exc!r}")
        self.notifier.error(message)
        return error

    # -- Loading ---------------------------------------------------------

    async def _liked_post_ids(self, post_ids: List[str]) -> Set[str]:
        identity = self.session.current_identity()
        if identity is None or not post_ids:
            return set()
        rows = await self.backend.fetch(
            Query("post_likes", "post_id").eq("user_id", identity.id).in_("post_id", post_ids)
        )
        return {row["post_id"] for row in rows}

    async def refresh(self) -> List[FeedPost]:
        """Replace the feed with a fresh copy from the backend."""
        self._generation += 1
        generation = self._generation

        try:
            rows = await self.backend.fetch(Query("posts").order("created_at", desc=True))

            author_ids = sorted({row["user_id"] for row in rows})
            names: Dict[str, Optional[str]] = {}
            if author_ids:
                profiles = await self.backend.fetch(Query("profiles", "id,nickname").in_("id", author_ids))
                names = {p["id"]: p.get("nickname") for p in profiles}

            liked = await self._liked_post_ids([row["id"] for row in rows])
        except Exception as e:
            if generation == self._generation:
                self.loading = False
                self._report(e, "Failed to load the feed")
            return self.posts

        if generation != self._generation or self._closed:
            logger.debug("Dropping superseded feed refresh")
            return self.posts

        self.posts = [
            FeedPost.from_row(row, names.get(row["user_id"]), row["id"] in liked)
            for row in rows
        ]
        self.loading = False
        self.refresh_count += 1
        self._changed()
        return self.posts

    async def _on_change(self, event: ChangeEvent) -> None:
        logger.debug(f"Feed change {event.type.value} on {event.row.get('id')}; refetching")
        await self.refresh()

    async def start(self) -> None:
        """Load the feed and subscribe to every change on posts."""
        self._closed = False
        await self.refresh()
        if self._channel is not None:
            return
        try:
            self._channel = await self.backend.subscribe("posts", self._on_change, event=EventType.ANY)
        except Exception as e:
            self._report(e, "Live feed updates are unavailable")

    async def stop(self) -> None:
        self._closed = True
        self._generation += 1
        channel, self._channel = self._channel, None
        if channel is not None:
            await self.backend.remove_channel(channel)

    # -- Mutations -------------------------------------------------------

    def _find(self, post_id: str) -> Optional[FeedPost]:
        return next((p for p in self.posts if p.id == post_id), None)

    async def _set_like(self, post_id: str, target: Optional[bool]) -> ToggleOutcome:
        identity = self.session.current_identity()
        if identity is None:
            self.notifier.error("Sign in to like posts")
            return ToggleOutcome(post_id, False, 0, succeeded=False)

        def read():
            post = self._find(post_id)
            return (post.has_liked, post.likes_count) if post else None

        def write(acted: bool, count: int) -> None:
            post = self._find(post_id)
            if post is not None:
                post.has_liked = acted
                post.likes_count = count
                self._changed()

        async def remote(acted: bool):
            return await POST_LIKES.apply(self.backend, post_id, identity.id, acted)

        return await self._likes.run(post_id, read, write, remote, target=target)

    async def like(self, post_id: str) -> ToggleOutcome:
        return await self._set_like(post_id, True)

    async def unlike(self, post_id: str) -> ToggleOutcome:
        return await self._set_like(post_id, False)

    async def toggle_like(self, post_id: str) -> ToggleOutcome:
        return await self._set_like(post_id, None)

    async def create_post(self, content: str, media_url: Optional[str] = None) -> FeedPost:
        """Publish a post. The feed refetches when the change arrives."""
        content = (content or "").strip()
        if not content:
            raise ValidationError("Post cannot be empty")
        if len(content) > settings.max_confession_length:
            raise ValidationError(f"Post cannot exceed {settings.max_confession_length} characters")
        identity = self.session.require_identity(self.notifier, "Sign in to post")

        try:
            row = await self.backend.insert("posts", {
                "user_id": identity.id,
                "content": content,
                "media_url": media_url,
            })
        except Exception as e:
            raise self._report(e, "Failed to publish post") from e
        return FeedPost.from_row(row, identity.nickname)

    async def add_comment(self, post_id: str, content: str) -> Comment:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Comment cannot be empty")
        if len(content) > settings.max_comment_length:
            raise ValidationError(f"Comment cannot exceed {settings.max_comment_length} characters")
        identity = self.session.require_identity(self.notifier, "Sign in to comment")

        try:
            row = await self.backend.insert("comments", {
                "post_id": post_id,
                "user_id": identity.id,
                "content": content,
            })
            count = len(await self.backend.fetch(Query("comments", "id").eq("post_id", post_id)))
            await self.backend.update(Query("posts").eq("id", post_id), {"comments_count": count})
        except Exception as e:
            raise self._report(e, "Failed to add comment") from e
        return Comment.from_row(row)


__all__ = ["FeedSync", "POST_LIKES"]
