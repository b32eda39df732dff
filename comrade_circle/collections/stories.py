"""
Photo stories that disappear after a fixed lifetime.

The image goes to the stories bucket first; the row that points at it
is only written once the upload succeeded. Expired rows are filtered out
on read, never deleted here.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from ..backend.base import Query, utc_now_iso
from ..core.config import settings
from ..core.errors import ValidationError
from ..models import Story
from .base import BaseCollection
from .media import UserMedia

logger = logging.getLogger(__name__)


class StoriesCollection(BaseCollection):
    """Unexpired stories, newest first."""

    load_error_message = "Failed to load stories. Please try again."

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.media = UserMedia(self.backend, bucket=settings.stories_bucket)

    async def fetch_stories(self, now: Optional[str] = None) -> List[Story]:
        rows = await self.backend.fetch(
            Query("stories")
            .gt("expires_at", now or utc_now_iso())
            .order("created_at", desc=True)
        )
        names = await self._nicknames([row["user_id"] for row in rows])
        return [Story.from_row(row, names.get(row["user_id"])) for row in rows]

    async def _fetch(self) -> List[Story]:
        return await self.fetch_stories()

    def get(self, story_id: str) -> Optional[Story]:
        return next((s for s in self.items if s.id == story_id), None)

    async def add_story(self, filename: str, data: bytes, content_type: Optional[str] = None) -> Story:
        """
        Upload an image and publish it as a story for the configured lifetime.

        Raises:
            ValidationError: Empty file.
            NotAuthenticated: No session.
            ComradeError: Upload or insert failed (after notifying).
        """
        if not data:
            raise ValidationError("Story image cannot be empty")
        identity = self._require_identity("Sign in to post a story")

        async def create() -> Story:
            url = await self.media.upload_media(filename, data, identity.id, content_type)
            created = datetime.now(timezone.utc)
            expires = created + timedelta(hours=settings.story_ttl_hours)
            row = await self.backend.insert("stories", {
                "user_id": identity.id,
                "image_url": url,
                "created_at": created.isoformat(timespec="microseconds"),
                "expires_at": expires.isoformat(timespec="microseconds"),
            })
            return Story.from_row(row, identity.display_name)

        story = await self._submit(
            create,
            "Story posted successfully!",
            "Failed to post story. Please try again.",
        )
        await self.load()
        return story

    async def delete_story(self, story_id: str) -> None:
        """Delete one of the current user's own stories."""
        identity = self._require_identity("Sign in to manage your stories")
        story = self.get(story_id)
        if story is not None and story.user_id != identity.id:
            raise ValidationError("You can only delete your own stories")

        async def remove() -> None:
            deleted = await self.backend.delete(
                Query("stories").eq("id", story_id).eq("user_id", identity.id)
            )
            if not deleted:
                logger.warning(f"Story {story_id} was not deleted (missing or not owned)")

        await self._submit(remove, "Story deleted", "Failed to delete story. Please try again.")
        await self.load()


__all__ = ["StoriesCollection"]
