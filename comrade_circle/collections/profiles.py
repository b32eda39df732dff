"""
Connect deck: browse other users' profiles and like them.

A like is a one-way record in profile_likes. Two users match when each
has liked the other.
"""

import logging
from typing import List, Optional

from ..backend.base import Query
from ..models import ConnectProfile
from ..sync.optimistic import JoinCounter, OptimisticToggle, ToggleOutcome
from .base import BaseCollection

logger = logging.getLogger(__name__)

PROFILE_LIKES = JoinCounter(
    join_table="profile_likes",
    subject_column="liked_id",
    actor_column="liker_id",
)

MATCH_MESSAGE = "🎉 It's a match! You can now connect with this comrade!"
LIKE_SENT_MESSAGE = "Like sent! If they like you back, you'll get a match notification."


class ProfilesCollection(BaseCollection):
    """Other users' profiles with like and match flags."""

    load_error_message = "Failed to load profiles. Please try again."

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.current_index = 0
        self._likes = OptimisticToggle(self.notifier, "Failed to like profile. Please try again.")

    async def _fetch(self) -> List[ConnectProfile]:
        identity = self.session.current_identity()
        if identity is None:
            return []

        rows = await self.backend.fetch(Query("profiles").neq("id", identity.id))
        mine = await self.backend.fetch(Query("profile_likes", "liked_id").eq("liker_id", identity.id))
        theirs = await self.backend.fetch(Query("profile_likes", "liker_id").eq("liked_id", identity.id))

        liked = {row["liked_id"] for row in mine}
        likers = {row["liker_id"] for row in theirs}
        self.current_index = 0
        return [
            ConnectProfile.from_row(
                row,
                is_liked=row["id"] in liked,
                is_matched=row["id"] in liked and row["id"] in likers,
            )
            for row in rows
        ]

    def get(self, profile_id: str) -> Optional[ConnectProfile]:
        return next((p for p in self.items if p.id == profile_id), None)

    @property
    def current_profile(self) -> Optional[ConnectProfile]:
        if 0 <= self.current_index < len(self.items):
            return self.items[self.current_index]
        return None

    def next_profile(self) -> Optional[ConnectProfile]:
        """Advance the deck, wrapping around at the end."""
        if not self.items:
            return None
        self.current_index = (self.current_index + 1) % len(self.items)
        return self.current_profile

    def matches(self) -> List[ConnectProfile]:
        return [p for p in self.items if p.is_matched]

    async def _is_liked_back(self, profile_id: str, user_id: str) -> bool:
        row = await self.backend.fetch_one(
            Query("profile_likes", "id").eq("liker_id", profile_id).eq("liked_id", user_id)
        )
        return row is not None

    async def like_profile(self, profile_id: str) -> ToggleOutcome:
        """
        Like a profile, then report whether it produced a match.

        Liking is idempotent; liking an already liked profile is a no-op.
        """
        identity = self.session.current_identity()
        if identity is None:
            self.notifier.error("Sign in to connect with comrades")
            return ToggleOutcome(profile_id, False, 0, succeeded=False)

        def read():
            profile = self.get(profile_id)
            return (profile.is_liked, 0) if profile else None

        def write(acted: bool, count: int) -> None:
            profile = self.get(profile_id)
            if profile is not None:
                profile.is_liked = acted
                if not acted:
                    profile.is_matched = False

        async def remote(acted: bool):
            return await PROFILE_LIKES.apply(self.backend, profile_id, identity.id, acted)

        already_liked = (self.get(profile_id) or ConnectProfile(profile_id, "")).is_liked
        outcome = await self._likes.run(profile_id, read, write, remote, target=True, counted=False)
        if not outcome.succeeded or already_liked:
            return outcome

        try:
            matched = await self._is_liked_back(profile_id, identity.id)
        except Exception as e:
            logger.warning(f"Match check for {profile_id} failed: {e!r}")
            matched = False

        profile = self.get(profile_id)
        if matched:
            if profile is not None:
                profile.is_matched = True
            self.notifier.success(MATCH_MESSAGE)
        else:
            self.notifier.info(LIKE_SENT_MESSAGE)
        return outcome


__all__ = ["ProfilesCollection", "PROFILE_LIKES", "MATCH_MESSAGE", "LIKE_SENT_MESSAGE"]
