"""
Confessions feed.

Anonymous confessions are stored without an author id, so neither the
backend row nor the local cache can reveal who posted them.
"""

import logging
from typing import List, Optional

from ..backend.base import Query
from ..core.config import settings
from ..core.errors import ValidationError
from ..models import Confession
from ..sync.optimistic import JoinCounter, OptimisticToggle, ToggleOutcome
from .base import BaseCollection

logger = logging.getLogger(__name__)

CONFESSION_UPVOTES = JoinCounter(
    join_table="confession_upvotes",
    subject_column="confession_id",
    actor_column="user_id",
    counter_table="confessions",
    counter_column="upvotes",
)

FILTERS = ("trending", "newest")


class ConfessionsCollection(BaseCollection):
    """Confessions with upvotes and a trending/newest sort."""

    load_error_message = "Failed to load confessions. Please try again."

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.filter = "trending"
        self._upvotes = OptimisticToggle(self.notifier, "Failed to update upvote. Please try again.")

    def _sort(self) -> None:
        if self.filter == "trending":
            self.items.sort(key=lambda c: (c.upvotes, c.created_at), reverse=True)
        else:
            self.items.sort(key=lambda c: c.created_at, reverse=True)

    def set_filter(self, name: str) -> None:
        if name not in FILTERS:
            raise ValidationError(f"Unknown filter: {name}")
        self.filter = name
        self._sort()

    async def _fetch(self) -> List[Confession]:
        rows = await self.backend.fetch(Query("confessions").order("created_at", desc=True))

        names = await self._nicknames([r.get("author_id") for r in rows if not r.get("is_anonymous")])

        upvoted = set()
        identity = self.session.current_identity()
        if identity is not None and rows:
            votes = await self.backend.fetch(
                Query("confession_upvotes", "confession_id")
                .eq("user_id", identity.id)
                .in_("confession_id", [r["id"] for r in rows])
            )
            upvoted = {v["confession_id"] for v in votes}

        confessions = [
            Confession.from_row(r, author=names.get(r.get("author_id")), has_upvoted=r["id"] in upvoted)
            for r in rows
        ]
        if self.filter == "trending":
            confessions.sort(key=lambda c: (c.upvotes, c.created_at), reverse=True)
        return confessions

    def get(self, confession_id: str) -> Optional[Confession]:
        return next((c for c in self.items if c.id == confession_id), None)

    async def add_confession(self, content: str, is_anonymous: bool) -> Confession:
        """
        Post a confession and prepend it to the cache.

        Raises:
            ValidationError: Empty or oversized content.
            NotAuthenticated: No session.
            ComradeError: The insert failed (after notifying).
        """
        content = (content or "").strip()
        if not content:
            raise ValidationError("Confession cannot be empty")
        if len(content) > settings.max_confession_length:
            raise ValidationError(f"Confession cannot exceed {settings.max_confession_length} characters")
        identity = self._require_identity("Sign in to post a confession")

        async def create() -> Confession:
            row = await self.backend.insert("confessions", {
                "content": content,
                "is_anonymous": bool(is_anonymous),
                "author_id": None if is_anonymous else identity.id,
            })
            return Confession.from_row(row, author=identity.display_name)

        confession = await self._submit(
            create,
            "Confession posted successfully!",
            "Failed to post confession. Please try again.",
        )
        self.items.insert(0, confession)
        return confession

    async def toggle_upvote(self, confession_id: str) -> ToggleOutcome:
        """Optimistically flip the current user's upvote."""
        identity = self.session.current_identity()
        if identity is None:
            self.notifier.error("Sign in to upvote")
            return ToggleOutcome(confession_id, False, 0, succeeded=False)

        def read():
            confession = self.get(confession_id)
            return (confession.has_upvoted, confession.upvotes) if confession else None

        def write(acted: bool, count: int) -> None:
            confession = self.get(confession_id)
            if confession is not None:
                confession.has_upvoted = acted
                confession.upvotes = count

        async def remote(acted: bool):
            return await CONFESSION_UPVOTES.apply(self.backend, confession_id, identity.id, acted)

        return await self._upvotes.run(confession_id, read, write, remote)


__all__ = ["ConfessionsCollection", "CONFESSION_UPVOTES", "FILTERS"]
