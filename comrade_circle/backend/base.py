"""
Backend contract for the Comrade Circle sync client.

The hosted service is a black box that provides row storage with
composable filters, push notifications of row changes, email/password
auth and blob storage. Components only ever talk to the abstract
Backend defined here.
"""

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """Current UTC time in the service's timestamp format."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware datetime.

    ``Z`` suffixes are accepted and naive values are taken as UTC.
    Returns None for anything that is not a timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and "-" in value:
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EventType(str, Enum):
    """Row change event types a channel can listen for."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ANY = "*"


class FilterOp(str, Enum):
    """Comparison operators understood by every backend."""
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    IS = "is"


def _compare(op: FilterOp, actual: Any, expected: Any) -> bool:
    if op == FilterOp.EQ:
        return actual == expected
    if op == FilterOp.NEQ:
        return actual != expected
    if op == FilterOp.IN:
        return actual in expected
    if op == FilterOp.IS:
        return actual is expected
    if actual is None:
        return False
    # Timestamps written with different offsets compare by instant.
    actual_ts, expected_ts = parse_timestamp(actual), parse_timestamp(expected)
    if actual_ts is not None and expected_ts is not None:
        actual, expected = actual_ts, expected_ts
    if op == FilterOp.GT:
        return actual > expected
    if op == FilterOp.GTE:
        return actual >= expected
    if op == FilterOp.LT:
        return actual < expected
    if op == FilterOp.LTE:
        return actual <= expected
    raise ValueError(f"Unsupported filter operator: {op}")


@dataclass(frozen=True)
class Filter:
    """A single column predicate."""
    column: str
    op: FilterOp
    value: Any

    def matches(self, row: Dict[str, Any]) -> bool:
        return _compare(self.op, row.get(self.column), self.value)

    def render_value(self) -> str:
        """Value in the service's query-string syntax."""
        if self.op == FilterOp.IN:
            return "(" + ",".join(str(v) for v in self.value) + ")"
        if self.value is None:
            return "null"
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        return str(self.value)

    def render(self) -> str:
        """Render as ``column=op.value`` (channel filter syntax)."""
        return f"{self.column}={self.op.value}.{self.render_value()}"

    def render_inline(self) -> str:
        """Render as ``column.op.value`` (inside an or-group)."""
        return f"{self.column}.{self.op.value}.{self.render_value()}"


class Query:
    """
    Composable row query.

    Plain filters are ANDed together. Each ``or_`` call adds a group of
    alternatives (each alternative is itself a conjunction); groups are
    ANDed with everything else.

    Example:
        Query("conversations").or_(
            [Filter("user1_id", FilterOp.EQ, a), Filter("user2_id", FilterOp.EQ, b)],
            [Filter("user1_id", FilterOp.EQ, b), Filter("user2_id", FilterOp.EQ, a)],
        )
    """

    def __init__(self, table: str, columns: str = "*"):
        self.table = table
        self.columns = columns
        self.filters: List[Filter] = []
        self.any_of: List[List[List[Filter]]] = []
        self.ordering: List[Tuple[str, bool]] = []
        self.limit_count: Optional[int] = None

    def __repr__(self) -> str:
        return (
            f"Query(table={self.table!r}, filters={self.filters!r}, "
            f"any_of={self.any_of!r}, ordering={self.ordering!r}, limit={self.limit_count!r})"
        )

    def select(self, columns: str) -> "Query":
        self.columns = columns
        return self

    def where(self, column: str, op: FilterOp, value: Any) -> "Query":
        self.filters.append(Filter(column, op, value))
        return self

    def eq(self, column: str, value: Any) -> "Query":
        return self.where(column, FilterOp.EQ, value)

    def neq(self, column: str, value: Any) -> "Query":
        return self.where(column, FilterOp.NEQ, value)

    def gt(self, column: str, value: Any) -> "Query":
        return self.where(column, FilterOp.GT, value)

    def gte(self, column: str, value: Any) -> "Query":
        return self.where(column, FilterOp.GTE, value)

    def lt(self, column: str, value: Any) -> "Query":
        return self.where(column, FilterOp.LT, value)

    def lte(self, column: str, value: Any) -> "Query":
        return self.where(column, FilterOp.LTE, value)

    def in_(self, column: str, values: Sequence[Any]) -> "Query":
        return self.where(column, FilterOp.IN, list(values))

    def or_(self, *alternatives: Sequence[Filter]) -> "Query":
        self.any_of.append([list(alt) for alt in alternatives])
        return self

    def order(self, column: str, desc: bool = False) -> "Query":
        self.ordering.append((column, desc))
        return self

    def limit(self, count: int) -> "Query":
        self.limit_count = count
        return self

    def copy(self) -> "Query":
        return copy.deepcopy(self)

    def matches(self, row: Dict[str, Any]) -> bool:
        if not all(f.matches(row) for f in self.filters):
            return False
        for group in self.any_of:
            if not any(all(f.matches(row) for f in alt) for alt in group):
                return False
        return True

    def apply(self, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Filter, order and limit rows locally."""
        result = [row for row in rows if self.matches(row)]

        # Stable sorts applied last-key-first give multi-column ordering.
        for column, desc in reversed(self.ordering):
            present = [r for r in result if r.get(column) is not None]
            missing = [r for r in result if r.get(column) is None]
            stamps = [parse_timestamp(r[column]) for r in present]
            if present and all(s is not None for s in stamps):
                order = sorted(range(len(present)), key=lambda i: stamps[i], reverse=desc)
                present = [present[i] for i in order]
            else:
                present.sort(key=lambda r: r[column], reverse=desc)
            result = present + missing

        if self.limit_count is not None:
            result = result[:self.limit_count]

        if self.columns != "*":
            wanted = [c.strip() for c in self.columns.split(",")]
            result = [{c: r.get(c) for c in wanted} for r in result]

        return result


@dataclass
class ChangeEvent:
    """A row-level change pushed by the backend."""
    table: str
    type: EventType
    new: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)
    commit_timestamp: str = field(default_factory=utc_now_iso)

    @property
    def row(self) -> Dict[str, Any]:
        """The affected row: new state, or old state for deletes."""
        return self.new or self.old


ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


class Channel:
    """
    A live subscription to row changes on one table.

    Events are buffered and handed to the callback one at a time, in
    arrival order. Closing the channel stops delivery immediately;
    queued events are dropped.
    """

    def __init__(
        self,
        table: str,
        callback: ChangeCallback,
        event: EventType = EventType.ANY,
        filter: Optional[Filter] = None,
        name: Optional[str] = None,
    ):
        self.table = table
        self.callback = callback
        self.event = event
        self.filter = filter
        self.id = name or f"{table}-{uuid.uuid4().hex[:12]}"
        self.closed = False

        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"Channel(id={self.id!r}, table={self.table!r}, event={self.event.value!r})"

    def accepts(self, event: ChangeEvent) -> bool:
        if self.closed or event.table != self.table:
            return False
        if self.event != EventType.ANY and event.type != self.event:
            return False
        if self.filter is not None and not self.filter.matches(event.row):
            return False
        return True

    def open(self) -> None:
        """Start the delivery worker."""
        if self._worker is None:
            self._worker = asyncio.create_task(self._deliver_loop())

    def deliver(self, event: ChangeEvent) -> bool:
        """Queue an event for the callback. Returns False if not accepted."""
        if not self.accepts(event):
            return False
        self._queue.put_nowait(event)
        return True

    async def _deliver_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if not self.closed:
                    await self.callback(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error in channel callback for {self.id}: {e}")
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        if self.closed or self._worker is None:
            return
        await self._queue.join()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        # Release anyone blocked in drain()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()


@dataclass
class AuthUser:
    """The backend's view of an authenticated account."""
    id: str
    email: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: Dict[str, Any]) -> "AuthUser":
        return cls(
            id=data["id"],
            email=data.get("email") or "",
            metadata=data.get("user_metadata") or {},
            created_at=data.get("created_at"),
        )


class AuthEvent(str, Enum):
    """Auth state stream events."""
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


AuthCallback = Callable[[AuthEvent, Optional[AuthUser]], Awaitable[None]]


class AuthStateEmitter:
    """Listener registry for the auth state stream."""

    def __init__(self):
        self._auth_listeners: List[AuthCallback] = []

    def on_auth_state_change(self, callback: AuthCallback) -> Callable[[], None]:
        """Register a listener. Returns a callable that unregisters it."""
        self._auth_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._auth_listeners:
                self._auth_listeners.remove(callback)

        return unsubscribe

    async def _emit_auth(self, event: AuthEvent, user: Optional[AuthUser]) -> None:
        for listener in list(self._auth_listeners):
            try:
                await listener(event, user)
            except Exception as e:
                logger.exception(f"Auth listener failed on {event.value}: {e}")


class Backend(AuthStateEmitter, ABC):
    """Interface to the hosted backend service."""

    # Rows

    @abstractmethod
    async def fetch(self, query: Query) -> List[Dict[str, Any]]:
        """Return rows matching the query."""
        pass

    async def fetch_one(self, query: Query) -> Optional[Dict[str, Any]]:
        """Return the first matching row, or None."""
        rows = await self.fetch(query.copy().limit(1))
        return rows[0] if rows else None

    @abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it with server-generated columns."""
        pass

    @abstractmethod
    async def update(self, query: Query, values: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Update matching rows and return their new state."""
        pass

    @abstractmethod
    async def delete(self, query: Query) -> List[Dict[str, Any]]:
        """Delete matching rows and return them."""
        pass

    # Realtime

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        event: EventType = EventType.ANY,
        filter: Optional[Filter] = None,
    ) -> Channel:
        """Open a channel delivering row changes to callback."""
        pass

    @abstractmethod
    async def remove_channel(self, channel: Channel) -> None:
        """Tear down a channel."""
        pass

    # Auth

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> AuthUser:
        pass

    @abstractmethod
    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuthUser:
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        pass

    @abstractmethod
    async def get_user(self) -> Optional[AuthUser]:
        pass

    # Blob storage

    @abstractmethod
    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
        upsert: bool = False,
    ) -> str:
        """Store a blob. Returns its path within the bucket."""
        pass

    @abstractmethod
    def public_url(self, bucket: str, path: str) -> str:
        """Stable public retrieval URL for a stored blob."""
        pass

    @abstractmethod
    async def remove(self, bucket: str, paths: Sequence[str]) -> None:
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass


__all__ = [
    "utc_now_iso",
    "parse_timestamp",
    "EventType",
    "FilterOp",
    "Filter",
    "Query",
    "ChangeEvent",
    "ChangeCallback",
    "Channel",
    "AuthUser",
    "AuthEvent",
    "AuthCallback",
    "AuthStateEmitter",
    "Backend",
]
