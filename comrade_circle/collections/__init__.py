from .base import BaseCollection
from .confessions import CONFESSION_UPVOTES, ConfessionsCollection
from .events import EventsCollection
from .hustles import HustlesCollection
from .media import UserMedia, object_path
from .profiles import LIKE_SENT_MESSAGE, MATCH_MESSAGE, PROFILE_LIKES, ProfilesCollection
from .stories import StoriesCollection

__all__ = [
    "BaseCollection",
    "ConfessionsCollection",
    "CONFESSION_UPVOTES",
    "EventsCollection",
    "HustlesCollection",
    "ProfilesCollection",
    "PROFILE_LIKES",
    "MATCH_MESSAGE",
    "LIKE_SENT_MESSAGE",
    "StoriesCollection",
    "UserMedia",
    "object_path",
]
