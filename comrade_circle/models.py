"""
Entity models for the Comrade Circle sync client.

Each model is a local projection of a backend row. ``from_row`` builds
one from the service's column names; ``to_dict`` produces a plain
serializable view for the UI layer.
"""
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass
class Identity:
    """The signed-in user, merged from the auth account and its profile."""
    id: str
    email: str
    nickname: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    bio: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.nickname or self.email.split("@")[0]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Conversation:
    """Durable pairing record for messages between two users."""
    id: str
    user1_id: str
    user2_id: str
    created_at: str
    updated_at: str
    other_user_nickname: Optional[str] = None
    last_message: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Conversation":
        return cls(
            id=row["id"],
            user1_id=row["user1_id"],
            user2_id=row["user2_id"],
            created_at=row.get("created_at", ""),
            updated_at=row.get("updated_at") or row.get("created_at", ""),
        )

    def other_participant(self, user_id: str) -> str:
        return self.user2_id if self.user1_id == user_id else self.user1_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Message:
    """A direct message. Immutable except for the read flag."""
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: str
    read: bool = False
    sender_nickname: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any], sender_nickname: Optional[str] = None) -> "Message":
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            content=row["content"],
            created_at=row.get("created_at", ""),
            read=bool(row.get("read", False)),
            sender_nickname=sender_nickname,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Confession:
    """
    A confession post.

    Anonymous confessions never carry author_id or author, whatever
    the row contained.
    """
    id: str
    content: str
    is_anonymous: bool
    upvotes: int = 0
    created_at: str = ""
    author_id: Optional[str] = None
    author: Optional[str] = None
    has_upvoted: bool = False

    @classmethod
    def from_row(
        cls,
        row: Dict[str, Any],
        author: Optional[str] = None,
        has_upvoted: bool = False,
    ) -> "Confession":
        is_anonymous = bool(row.get("is_anonymous", False))
        return cls(
            id=row["id"],
            content=row["content"],
            is_anonymous=is_anonymous,
            upvotes=int(row.get("upvotes") or 0),
            created_at=row.get("created_at", ""),
            author_id=None if is_anonymous else row.get("author_id"),
            author=None if is_anonymous else author,
            has_upvoted=has_upvoted,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class HustleCategory(str, Enum):
    """Gig board categories."""
    JOB = "job"
    INTERNSHIP = "internship"
    PROJECT = "project"
    TUTORING = "tutoring"
    OTHER = "other"


@dataclass
class Hustle:
    """A gig board listing."""
    id: str
    title: str
    description: str
    category: HustleCategory
    posted_by: str
    created_at: str = ""
    contact_email: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Hustle":
        try:
            category = HustleCategory(row.get("category", "other"))
        except ValueError:
            category = HustleCategory.OTHER
        return cls(
            id=row["id"],
            title=row["title"],
            description=row.get("description", ""),
            category=category,
            posted_by=row.get("posted_by", ""),
            created_at=row.get("created_at", ""),
            contact_email=row.get("contact_email"),
            user_id=row.get("user_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        return data


@dataclass
class CampusEvent:
    """An events listing entry."""
    id: str
    title: str
    description: str
    event_date: str
    location: str
    organizer: str
    created_at: str = ""
    campus: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CampusEvent":
        return cls(
            id=row["id"],
            title=row["title"],
            description=row.get("description", ""),
            event_date=row["event_date"],
            location=row.get("location", ""),
            organizer=row.get("organizer", ""),
            created_at=row.get("created_at", ""),
            campus=row.get("campus"),
            user_id=row.get("user_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConnectProfile:
    """A profile card in the swipe-to-match deck."""
    id: str
    nickname: str
    tags: List[str] = field(default_factory=list)
    bio: Optional[str] = None
    is_liked: bool = False
    is_matched: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any], is_liked: bool = False, is_matched: bool = False) -> "ConnectProfile":
        return cls(
            id=row["id"],
            nickname=row.get("nickname") or "Anonymous",
            tags=list(row.get("tags") or []),
            bio=row.get("bio"),
            is_liked=is_liked,
            is_matched=is_matched,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FeedPost:
    """A feed post joined client-side with its author's nickname."""
    id: str
    user_id: str
    content: str
    likes_count: int = 0
    comments_count: int = 0
    created_at: str = ""
    media_url: Optional[str] = None
    author_nickname: Optional[str] = None
    has_liked: bool = False

    @classmethod
    def from_row(
        cls,
        row: Dict[str, Any],
        author_nickname: Optional[str] = None,
        has_liked: bool = False,
    ) -> "FeedPost":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            content=row.get("content", ""),
            likes_count=int(row.get("likes_count") or 0),
            comments_count=int(row.get("comments_count") or 0),
            created_at=row.get("created_at", ""),
            media_url=row.get("media_url"),
            author_nickname=author_nickname,
            has_liked=has_liked,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Comment:
    id: str
    post_id: str
    user_id: str
    content: str
    created_at: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Comment":
        return cls(
            id=row["id"],
            post_id=row["post_id"],
            user_id=row["user_id"],
            content=row["content"],
            created_at=row.get("created_at", ""),
        )


@dataclass
class Story:
    """A photo story, visible until expires_at."""
    id: str
    user_id: str
    image_url: str
    created_at: str
    expires_at: str
    user_nickname: str = "Anonymous"

    @classmethod
    def from_row(cls, row: Dict[str, Any], user_nickname: Optional[str] = None) -> "Story":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            image_url=row["image_url"],
            created_at=row.get("created_at", ""),
            expires_at=row["expires_at"],
            user_nickname=user_nickname or "Anonymous",
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


__all__ = [
    "Identity",
    "Conversation",
    "Message",
    "Confession",
    "HustleCategory",
    "Hustle",
    "CampusEvent",
    "ConnectProfile",
    "FeedPost",
    "Comment",
    "Story",
]
