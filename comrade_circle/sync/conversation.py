"""
Conversation sync for direct messages.

Resolves (or lazily creates) the single conversation between two users,
loads its history and keeps it live through one push channel filtered
on the conversation. Sent messages are not appended locally; the sender
sees them arrive through the same channel as the recipient.
"""

import logging
from typing import Callable, Dict, List, Optional

from ..backend.base import Backend, ChangeEvent, Channel, EventType, Filter, FilterOp, Query, utc_now_iso
from ..core.config import settings
from ..core.errors import ComradeError, ValidationError, translate_backend_error
from ..core.notifications import BaseNotifier, LogNotifier
from ..models import Conversation, Message
from ..session import SessionStore

logger = logging.getLogger(__name__)

MessagesListener = Callable[[List[Message]], None]


def pair_filters(a: str, b: str) -> List[List[Filter]]:
    """Both orderings of an unordered participant pair."""
    return [
        [Filter("user1_id", FilterOp.EQ, a), Filter("user2_id", FilterOp.EQ, b)],
        [Filter("user1_id", FilterOp.EQ, b), Filter("user2_id", FilterOp.EQ, a)],
    ]


class ConversationSync:
    """
    Keeps one conversation's message list in sync with the backend.

    Exactly one channel is open while a conversation is selected.
    Switching conversations closes the previous channel first; sender
    lookups still in flight for the old conversation are discarded when
    they complete.
    """

    def __init__(
        self,
        backend: Backend,
        session: SessionStore,
        notifier: Optional[BaseNotifier] = None,
        max_message_length: Optional[int] = None,
    ):
        """
        Args:
            backend: Backend client.
            session: Session store used to scope and gate operations.
            notifier: Sink for user-facing errors.
            max_message_length: Override for the configured limit.
        """
        self.backend = backend
        self.session = session
        self.notifier = notifier or LogNotifier()
        self.max_message_length = max_message_length or settings.max_message_length

        self.messages: List[Message] = []
        self.conversations: List[Conversation] = []
        self.current_conversation_id: Optional[str] = None
        self.loading = True

        self._channel: Optional[Channel] = None
        self._generation = 0
        self._listeners: List[MessagesListener] = []

    async def __aenter__(self) -> "ConversationSync":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def channel(self) -> Optional[Channel]:
        return self._channel

    def subscribe(self, listener: MessagesListener) -> Callable[[], None]:
        """Call listener with the message list after every change."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.messages)
            except Exception as e:
                logger.error(f"Messages listener failed: {e}")

    def _report(self, exc: Exception, message: str) -> ComradeError:
        error = translate_backend_error(exc)
        logger.error(f"{message}: {exc!r}")
        self.notifier.error(message)
        return error

    # -- Resolution ------------------------------------------------------

    async def resolve_conversation(self, self_id: str, other_id: str) -> str:
        """
        Return the conversation id for a pair of users, creating it if needed.

        After creating, both orderings are read back and the oldest row
        wins, so two clients racing to create converge on the same id.

        Raises:
            ValidationError: Empty or identical ids.
        """
        self_id = (self_id or "").strip()
        other_id = (other_id or "").strip()
        if not self_id or not other_id:
            raise ValidationError("Both participants are required")
        if self_id == other_id:
            raise ValidationError("Cannot start a conversation with yourself")

        def lookup() -> Query:
            return (
                Query("conversations")
                .or_(*pair_filters(self_id, other_id))
                .order("created_at")
                .order("id")
            )

        existing = await self.backend.fetch_one(lookup())
        if existing:
            return existing["id"]

        created = await self.backend.insert("conversations", {
            "user1_id": self_id,
            "user2_id": other_id,
        })
        logger.info(f"Created conversation {created['id']} between {self_id} and {other_id}")

        rows = await self.backend.fetch(lookup())
        if not rows:
            return created["id"]
        canonical = rows[0]["id"]
        if canonical != created["id"]:
            logger.warning(
                f"Duplicate conversation for pair ({self_id}, {other_id}): "
                f"using {canonical}, ignoring {created['id']}"
            )
        return canonical

    # -- History ---------------------------------------------------------

    async def _nicknames(self, user_ids: List[str]) -> Dict[str, Optional[str]]:
        if not user_ids:
            return {}
        rows = await self.backend.fetch(Query("profiles", "id,nickname").in_("id", user_ids))
        return {row["id"]: row.get("nickname") for row in rows}

    async def load_history(self, conversation_id: str) -> List[Message]:
        """All messages of a conversation, oldest first, with sender nicknames."""
        rows = await self.backend.fetch(
            Query("messages").eq("conversation_id", conversation_id).order("created_at")
        )
        names = await self._nicknames(sorted({row["sender_id"] for row in rows}))
        return [Message.from_row(row, names.get(row["sender_id"])) for row in rows]

    # -- Live channel ----------------------------------------------------

    def _is_current(self, conversation_id: str, generation: int) -> bool:
        return generation == self._generation and conversation_id == self.current_conversation_id

    async def _lookup_nickname(self, user_id: str) -> Optional[str]:
        try:
            profile = await self.backend.fetch_one(Query("profiles", "nickname").eq("id", user_id))
        except Exception as e:
            logger.warning(f"Sender lookup failed for {user_id}: {e!r}")
            return None
        return profile.get("nickname") if profile else None

    def _make_handler(self, conversation_id: str, generation: int):
        async def on_insert(event: ChangeEvent) -> None:
            if not self._is_current(conversation_id, generation):
                return
            row = event.new
            nickname = await self._lookup_nickname(row["sender_id"])

            if not self._is_current(conversation_id, generation):
                logger.debug(f"Discarding stale message {row.get('id')} for {conversation_id}")
                return
            if any(m.id == row["id"] for m in self.messages):
                return

            self.messages.append(Message.from_row(row, nickname))
            self._changed()

        return on_insert

    async def _teardown(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            await self.backend.remove_channel(channel)
            logger.debug(f"Closed channel {channel.id}")

    async def select(self, conversation_id: str) -> None:
        """
        Make a conversation current: close the old channel, open a new
        one for its inserts and load its history.
        """
        await self._teardown()
        self._generation += 1
        generation = self._generation
        self.current_conversation_id = conversation_id
        self.messages = []
        self._changed()

        try:
            channel = await self.backend.subscribe(
                "messages",
                self._make_handler(conversation_id, generation),
                event=EventType.INSERT,
                filter=Filter("conversation_id", FilterOp.EQ, conversation_id),
            )
        except Exception as e:
            self._report(e, "Could not connect to the conversation")
            return

        if generation != self._generation:
            # Superseded while subscribing.
            await self.backend.remove_channel(channel)
            return
        self._channel = channel

        try:
            history = await self.load_history(conversation_id)
        except Exception as e:
            self._report(e, "Failed to load messages")
            return

        if generation != self._generation:
            return
        seen = {m.id for m in history}
        self.messages = history + [m for m in self.messages if m.id not in seen]
        self._changed()

    async def open_with(self, other_id: str) -> Optional[str]:
        """Resolve the conversation with another user and select it."""
        identity = self.session.current_identity()
        if identity is None:
            self.notifier.error("Sign in to message comrades")
            return None
        try:
            conversation_id = await self.resolve_conversation(identity.id, other_id)
        except ValidationError as e:
            self.notifier.error(e.message)
            return None
        except Exception as e:
            self._report(e, "Could not open the conversation")
            return None

        await self.select(conversation_id)
        return conversation_id

    # -- Mutations -------------------------------------------------------

    def validate_content(self, content: str) -> str:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message cannot be empty")
        if len(content) > self.max_message_length:
            raise ValidationError(f"Message cannot exceed {self.max_message_length} characters")
        return content

    async def send(self, conversation_id: str, content: str) -> None:
        """
        Send a message. It shows up locally when the channel delivers it.

        Raises:
            ValidationError: Empty or oversized content (no network call made).
            NotAuthenticated: No session.
            NetworkError: The insert failed (after notifying).
        """
        content = self.validate_content(content)
        identity = self.session.require_identity(self.notifier, "Sign in to send messages")

        try:
            await self.backend.insert("messages", {
                "conversation_id": conversation_id,
                "sender_id": identity.id,
                "content": content,
            })
        except Exception as e:
            raise self._report(e, "Failed to send message") from e

        try:
            await self.backend.update(
                Query("conversations").eq("id", conversation_id),
                {"updated_at": utc_now_iso()},
            )
        except Exception as e:
            logger.warning(f"Could not touch conversation {conversation_id}: {e!r}")

    async def mark_read(self, conversation_id: str) -> int:
        """Mark messages from the other participant as read. Returns the count."""
        identity = self.session.current_identity()
        if identity is None:
            return 0
        try:
            updated = await self.backend.update(
                Query("messages")
                .eq("conversation_id", conversation_id)
                .neq("sender_id", identity.id)
                .eq("read", False),
                {"read": True},
            )
        except Exception as e:
            self._report(e, "Failed to mark messages as read")
            return 0

        ids = {row["id"] for row in updated}
        for message in self.messages:
            if message.id in ids:
                message.read = True
        if ids:
            self._changed()
        return len(ids)

    # -- Conversation list -----------------------------------------------

    async def fetch_conversations(self) -> List[Conversation]:
        """The current user's conversations, most recently active first."""
        identity = self.session.current_identity()
        if identity is None:
            self.loading = False
            return []

        try:
            rows = await self.backend.fetch(
                Query("conversations")
                .or_(
                    [Filter("user1_id", FilterOp.EQ, identity.id)],
                    [Filter("user2_id", FilterOp.EQ, identity.id)],
                )
                .order("updated_at", desc=True)
            )
            conversations = [Conversation.from_row(row) for row in rows]

            others = sorted({c.other_participant(identity.id) for c in conversations})
            names = await self._nicknames(others)

            last: Dict[str, str] = {}
            if conversations:
                recent = await self.backend.fetch(
                    Query("messages", "conversation_id,content,created_at")
                    .in_("conversation_id", [c.id for c in conversations])
                    .order("created_at", desc=True)
                )
                for row in recent:
                    last.setdefault(row["conversation_id"], row["content"])
        except Exception as e:
            self._report(e, "Failed to load conversations")
            return self.conversations
        finally:
            self.loading = False

        for conversation in conversations:
            conversation.other_user_nickname = names.get(conversation.other_participant(identity.id))
            conversation.last_message = last.get(conversation.id)

        self.conversations = conversations
        return conversations

    async def close(self) -> None:
        """Unsubscribe and drop any late results."""
        self._generation += 1
        self.current_conversation_id = None
        await self._teardown()


__all__ = ["ConversationSync", "pair_filters"]
