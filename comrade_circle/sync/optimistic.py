"""
Optimistic toggles with rollback.

Counter-like interactions (upvotes, likes) flip a local "has acted"
flag and adjust a local counter before the network call, then either
confirm or restore the snapshot. Attempts on the same entity run
through a per-entity lock, so a second tap waits for the first to
settle instead of racing its rollback.

State machine per entity:

    UNACTED --act--> ACTING --ok--> ACTED
                       |
                       +--fail--> ROLLING_BACK --> UNACTED

Undo runs the same path in the other direction.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple

from ..backend.base import Backend, Query
from ..core.errors import BackendError, ComradeError, translate_backend_error
from ..core.notifications import BaseNotifier

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class ToggleState(str, Enum):
    """Lifecycle of one entity-interaction pair."""
    UNACTED = "unacted"
    ACTING = "acting"
    ACTED = "acted"
    ROLLING_BACK = "rolling_back"


@dataclass
class ToggleOutcome:
    """Result of one optimistic attempt."""
    entity_id: str
    acted: bool
    count: int
    succeeded: bool
    error: Optional[ComradeError] = None


ReadState = Callable[[], Optional[Tuple[bool, int]]]
WriteState = Callable[[bool, int], None]
RemoteMutation = Callable[[bool], Awaitable[Optional[int]]]


@dataclass(frozen=True)
class JoinCounter:
    """
    A join table plus the denormalized counter derived from it.

    The join record is the source of truth; after every change the
    counter is recomputed from it and written back to the subject row.

    Attributes:
        join_table: Table holding one row per (actor, subject).
        subject_column: Join column referencing the subject.
        actor_column: Join column referencing the actor.
        counter_table: Table of the subject row (None: no counter).
        counter_column: Counter column on the subject row.
    """
    join_table: str
    subject_column: str
    actor_column: str
    counter_table: Optional[str] = None
    counter_column: Optional[str] = None

    async def _set_record(self, backend: Backend, subject_id: str, actor_id: str, present: bool) -> bool:
        """Make the join record present or absent. Returns whether a row changed."""
        if present:
            try:
                await backend.insert(self.join_table, {
                    self.subject_column: subject_id,
                    self.actor_column: actor_id,
                })
            except BackendError as e:
                # Already present: the desired state holds.
                if e.code != UNIQUE_VIOLATION:
                    raise
                return False
            return True
        removed = await backend.delete(
            Query(self.join_table)
            .eq(self.subject_column, subject_id)
            .eq(self.actor_column, actor_id)
        )
        return bool(removed)

    async def refresh_counter(self, backend: Backend, subject_id: str) -> int:
        """Recompute the counter from the join table and store it."""
        rows = await backend.fetch(Query(self.join_table, "id").eq(self.subject_column, subject_id))
        count = len(rows)
        await backend.update(Query(self.counter_table).eq("id", subject_id), {self.counter_column: count})
        return count

    async def apply(self, backend: Backend, subject_id: str, actor_id: str, acted: bool) -> Optional[int]:
        """Insert or delete the join record, then refresh the counter."""
        changed = await self._set_record(backend, subject_id, actor_id, acted)

        if self.counter_table is None:
            return None

        try:
            return await self.refresh_counter(backend, subject_id)
        except Exception:
            if not changed:
                raise
            # Compensate so the join record matches the rolled-back local state.
            try:
                await self._set_record(backend, subject_id, actor_id, not acted)
            except Exception as undo_error:
                logger.error(
                    f"Could not undo {self.join_table} change for {subject_id}: {undo_error!r}"
                )
            raise


class OptimisticToggle:
    """
    Runs optimistic attempts against locally cached state.

    Args:
        notifier: Sink for the single error notification on failure.
        failure_message: User-facing text for a failed attempt.
    """

    def __init__(self, notifier: BaseNotifier, failure_message: str = "Failed to update. Please try again."):
        self.notifier = notifier
        self.failure_message = failure_message
        self._locks: Dict[str, asyncio.Lock] = {}
        # entity_id -> callers holding or waiting on its lock
        self._pending: Dict[str, int] = {}
        self._states: Dict[str, ToggleState] = {}

    def state(self, entity_id: str) -> ToggleState:
        return self._states.get(entity_id, ToggleState.UNACTED)

    def in_flight(self, entity_id: str) -> bool:
        lock = self._locks.get(entity_id)
        return lock is not None and lock.locked()

    def forget(self, entity_id: Optional[str] = None) -> None:
        """Drop tracked state (all entities when entity_id is None)."""
        if entity_id is None:
            self._states.clear()
        else:
            self._states.pop(entity_id, None)

    async def run(
        self,
        entity_id: str,
        read: ReadState,
        write: WriteState,
        remote: RemoteMutation,
        target: Optional[bool] = None,
        counted: bool = True,
    ) -> ToggleOutcome:
        """
        Perform one optimistic attempt.

        Args:
            entity_id: Key for the per-entity lock and state.
            read: Returns the current (acted, count), or None if the entity
                is no longer cached.
            write: Applies (acted, count) to the local cache.
            remote: Network mutation for the desired acted value. May return
                the authoritative count.
            target: Desired acted value; None flips the current one.
            counted: Whether the counter moves with the flag.

        Returns:
            ToggleOutcome. Failures are rolled back and notified, never raised.
        """
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        self._pending[entity_id] = self._pending.get(entity_id, 0) + 1
        try:
            async with lock:
                return await self._attempt(entity_id, read, write, remote, target, counted)
        finally:
            self._pending[entity_id] -= 1
            if not self._pending[entity_id]:
                del self._pending[entity_id]
                self._locks.pop(entity_id, None)

    async def _attempt(
        self,
        entity_id: str,
        read: ReadState,
        write: WriteState,
        remote: RemoteMutation,
        target: Optional[bool],
        counted: bool,
    ) -> ToggleOutcome:
        current = read()
        if current is None:
            return ToggleOutcome(entity_id, False, 0, succeeded=False)

        acted, count = current
        desired = (not acted) if target is None else target
        if desired == acted:
            return ToggleOutcome(entity_id, acted, count, succeeded=True)

        new_count = count
        if counted:
            new_count = max(0, count + (1 if desired else -1))

        self._states[entity_id] = ToggleState.ACTING
        write(desired, new_count)

        try:
            confirmed = await remote(desired)
        except Exception as e:
            self._states[entity_id] = ToggleState.ROLLING_BACK
            write(acted, count)
            self._states[entity_id] = ToggleState.ACTED if acted else ToggleState.UNACTED

            error = translate_backend_error(e)
            logger.warning(f"Optimistic update for {entity_id} rolled back: {e!r}", exc_info=True)
            self.notifier.error(self.failure_message)
            return ToggleOutcome(entity_id, acted, count, succeeded=False, error=error)

        if counted and confirmed is not None and confirmed != new_count:
            new_count = confirmed
            write(desired, new_count)

        self._states[entity_id] = ToggleState.ACTED if desired else ToggleState.UNACTED
        return ToggleOutcome(entity_id, desired, new_count, succeeded=True)


__all__ = [
    "ToggleState",
    "ToggleOutcome",
    "JoinCounter",
    "OptimisticToggle",
    "UNIQUE_VIOLATION",
]
