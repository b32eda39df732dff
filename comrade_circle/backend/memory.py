"""
In-process backend for tests and local development.

Implements the full Backend contract against Python dicts: filtered row
storage with unique constraints, realtime fan-out to open channels,
email/password auth and blob storage. Every call yields to the event
loop at least once, like a network round trip would.
"""

import asyncio
import copy
import logging
import re
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from passlib.context import CryptContext

from ..core.config import settings
from ..core.errors import BackendError
from .base import (
    AuthEvent,
    AuthUser,
    Backend,
    ChangeCallback,
    ChangeEvent,
    Channel,
    EventType,
    Filter,
    Query,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Server-side column defaults, mirroring the hosted schema
DEFAULT_COLUMNS: Dict[str, Dict[str, Any]] = {
    "confessions": {"is_anonymous": False, "upvotes": 0, "author_id": None},
    "messages": {"read": False},
    "posts": {"likes_count": 0, "comments_count": 0, "media_url": None},
    "profiles": {"nickname": None, "tags": [], "bio": None},
    "hustles": {"contact_email": None},
    "events": {"campus": None},
}

# Unique constraints (table -> column tuples)
UNIQUE_CONSTRAINTS: Dict[str, List[Tuple[str, ...]]] = {
    "confession_upvotes": [("confession_id", "user_id")],
    "post_likes": [("post_id", "user_id")],
    "profile_likes": [("liker_id", "liked_id")],
    "profiles": [("id",)],
}

crypt_context = CryptContext(schemes=["pbkdf2_sha256"])


@dataclass
class _Account:
    user: AuthUser
    password_hash: str
    confirmed: bool = True
    banned: bool = False


@dataclass
class _InjectedFailure:
    operation: str
    table: Optional[str]
    error: Exception
    remaining: int


class MemoryBackend(Backend):
    """
    Dict-backed implementation of the Backend contract.

    Args:
        latency: Seconds each call sleeps before running.
        require_confirmation: New accounts must be confirmed before sign-in.
        unique_constraints: Override the default unique constraints.
    """

    def __init__(
        self,
        latency: float = 0.0,
        require_confirmation: bool = False,
        unique_constraints: Optional[Dict[str, List[Tuple[str, ...]]]] = None,
        public_base_url: str = "memory://storage",
    ):
        super().__init__()
        self.latency = latency
        self.require_confirmation = require_confirmation
        self.unique_constraints = unique_constraints if unique_constraints is not None else UNIQUE_CONSTRAINTS
        self.public_base_url = public_base_url

        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.buckets: Dict[str, Dict[str, bytes]] = defaultdict(dict)
        self.channels: List[Channel] = []
        self.calls: List[Tuple[str, Optional[str]]] = []

        self._accounts: Dict[str, _Account] = {}
        self._current_user: Optional[AuthUser] = None
        self._failures: List[_InjectedFailure] = []

    # -- Test helpers ----------------------------------------------------

    def fail_next(
        self,
        operation: str,
        error: Optional[Exception] = None,
        table: Optional[str] = None,
        times: int = 1,
    ) -> None:
        """
        Make the next matching call raise.

        Args:
            operation: Method name (fetch, insert, update, delete, upload,
                sign_in, sign_up, sign_out, subscribe).
            error: Exception to raise. Defaults to a generic BackendError.
            table: Only fail calls touching this table (or bucket).
            times: Number of calls to fail.
        """
        self._failures.append(_InjectedFailure(
            operation=operation,
            table=table,
            error=error or BackendError("Injected failure", code="injected", status=503),
            remaining=times,
        ))

    def seed(self, table: str, *rows: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Insert rows directly, without events or latency."""
        stored = [self._prepare_row(table, row) for row in rows]
        self.tables[table].extend(stored)
        return [dict(r) for r in stored]

    def confirm_email(self, email: str) -> None:
        self._accounts[email.lower()].confirmed = True

    def ban(self, email: str) -> None:
        self._accounts[email.lower()].banned = True

    async def drain(self) -> None:
        """Wait until every open channel has handled its queued events."""
        # Callbacks may write rows that feed other channels, so settle in passes.
        for _ in range(3):
            await asyncio.sleep(0)
            for channel in list(self.channels):
                await channel.drain()
        await asyncio.sleep(0)

    def count_calls(self, operation: str, table: Optional[str] = None) -> int:
        return sum(1 for op, t in self.calls if op == operation and (table is None or t == table))

    # -- Internals -------------------------------------------------------

    async def _round_trip(self, operation: str, table: Optional[str] = None) -> None:
        self.calls.append((operation, table))
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)

        for failure in self._failures:
            if failure.operation != operation:
                continue
            if failure.table is not None and failure.table != table:
                continue
            failure.remaining -= 1
            if failure.remaining <= 0:
                self._failures.remove(failure)
            raise failure.error

    def _prepare_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(DEFAULT_COLUMNS.get(table, {}))
        stored.update(copy.deepcopy(row))
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", utc_now_iso())
        if table == "conversations":
            stored.setdefault("updated_at", stored["created_at"])
        return stored

    def _check_unique(self, table: str, row: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None) -> None:
        constraints = [("id",)] + list(self.unique_constraints.get(table, []))
        for columns in constraints:
            key = tuple(row.get(c) for c in columns)
            for existing in self.tables[table]:
                if existing is ignore:
                    continue
                if tuple(existing.get(c) for c in columns) == key:
                    raise BackendError(
                        f'duplicate key value violates unique constraint "{table}_{"_".join(columns)}_key"',
                        code="23505",
                        status=409,
                    )

    def _broadcast(self, event: ChangeEvent) -> None:
        for channel in list(self.channels):
            channel.deliver(event)

    # -- Rows ------------------------------------------------------------

    async def fetch(self, query: Query) -> List[Dict[str, Any]]:
        await self._round_trip("fetch", query.table)
        return copy.deepcopy(query.apply(self.tables[query.table]))

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        await self._round_trip("insert", table)
        stored = self._prepare_row(table, row)
        self._check_unique(table, stored)
        self.tables[table].append(stored)

        self._broadcast(ChangeEvent(table=table, type=EventType.INSERT, new=copy.deepcopy(stored)))
        return copy.deepcopy(stored)

    async def update(self, query: Query, values: Dict[str, Any]) -> List[Dict[str, Any]]:
        await self._round_trip("update", query.table)
        updated = []
        for row in self.tables[query.table]:
            if not query.matches(row):
                continue
            old = copy.deepcopy(row)
            candidate = {**row, **copy.deepcopy(values)}
            self._check_unique(query.table, candidate, ignore=row)
            row.update(copy.deepcopy(values))
            updated.append(copy.deepcopy(row))
            self._broadcast(ChangeEvent(
                table=query.table, type=EventType.UPDATE, new=copy.deepcopy(row), old=old,
            ))
        return updated

    async def delete(self, query: Query) -> List[Dict[str, Any]]:
        await self._round_trip("delete", query.table)
        kept, removed = [], []
        for row in self.tables[query.table]:
            (removed if query.matches(row) else kept).append(row)
        self.tables[query.table] = kept

        for row in removed:
            self._broadcast(ChangeEvent(table=query.table, type=EventType.DELETE, old=copy.deepcopy(row)))
        return copy.deepcopy(removed)

    # -- Realtime --------------------------------------------------------

    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        event: EventType = EventType.ANY,
        filter: Optional[Filter] = None,
    ) -> Channel:
        await self._round_trip("subscribe", table)
        channel = Channel(table, callback, event=event, filter=filter)
        channel.open()
        self.channels.append(channel)
        logger.debug(f"Opened channel {channel.id}")
        return channel

    async def remove_channel(self, channel: Channel) -> None:
        if channel in self.channels:
            self.channels.remove(channel)
        await channel.close()
        logger.debug(f"Removed channel {channel.id}")

    @property
    def open_channels(self) -> List[Channel]:
        return [c for c in self.channels if not c.closed]

    # -- Auth ------------------------------------------------------------

    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuthUser:
        await self._round_trip("sign_up")
        key = email.strip().lower()
        if not EMAIL_PATTERN.match(key):
            raise BackendError("Unable to validate email address: invalid format", code="email_address_invalid", status=400)
        if len(password) < settings.min_password_length:
            raise BackendError(
                f"Password should be at least {settings.min_password_length} characters.",
                code="weak_password",
                status=422,
            )
        if key in self._accounts:
            raise BackendError("User already registered", code="user_already_exists", status=422)

        user = AuthUser(id=str(uuid.uuid4()), email=key, metadata=dict(metadata or {}), created_at=utc_now_iso())
        self._accounts[key] = _Account(
            user=user,
            password_hash=crypt_context.hash(password),
            confirmed=not self.require_confirmation,
        )

        if self.require_confirmation:
            return user

        self._current_user = user
        await self._emit_auth(AuthEvent.SIGNED_IN, user)
        return user

    async def sign_in(self, email: str, password: str) -> AuthUser:
        await self._round_trip("sign_in")
        account = self._accounts.get(email.strip().lower())
        if account is None or not crypt_context.verify(password, account.password_hash):
            raise BackendError("Invalid login credentials", code="invalid_credentials", status=400)
        if account.banned:
            raise BackendError("User is banned", code="user_banned", status=400)
        if not account.confirmed:
            raise BackendError("Email not confirmed", code="email_not_confirmed", status=400)

        self._current_user = account.user
        await self._emit_auth(AuthEvent.SIGNED_IN, account.user)
        return account.user

    async def sign_out(self) -> None:
        await self._round_trip("sign_out")
        self._current_user = None
        await self._emit_auth(AuthEvent.SIGNED_OUT, None)

    async def get_user(self) -> Optional[AuthUser]:
        await self._round_trip("get_user")
        return self._current_user

    # -- Storage ---------------------------------------------------------

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
        upsert: bool = False,
    ) -> str:
        await self._round_trip("upload", bucket)
        if path in self.buckets[bucket] and not upsert:
            raise BackendError("The resource already exists", code="Duplicate", status=409)
        self.buckets[bucket][path] = bytes(data)
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_base_url}/{bucket}/{path}"

    async def remove(self, bucket: str, paths: Sequence[str]) -> None:
        await self._round_trip("remove", bucket)
        for path in paths:
            self.buckets[bucket].pop(path, None)

    async def close(self) -> None:
        for channel in list(self.channels):
            await self.remove_channel(channel)


__all__ = [
    "MemoryBackend",
    "DEFAULT_COLUMNS",
    "UNIQUE_CONSTRAINTS",
]
