"""Realtime and optimistic synchronization of cached state."""

from .conversation import ConversationSync, pair_filters
from .feed import POST_LIKES, FeedSync
from .optimistic import JoinCounter, OptimisticToggle, ToggleOutcome, ToggleState

__all__ = [
    "ConversationSync",
    "pair_filters",
    "FeedSync",
    "POST_LIKES",
    "JoinCounter",
    "OptimisticToggle",
    "ToggleOutcome",
    "ToggleState",
]
