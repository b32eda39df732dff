"""Shared shape of the domain collections."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional

from ..backend.base import Backend, Query
from ..core.errors import ComradeError, translate_backend_error
from ..core.notifications import BaseNotifier, LogNotifier
from ..models import Identity
from ..session import SessionStore

logger = logging.getLogger(__name__)


class BaseCollection(ABC):
    """
    A locally cached list of entities with a loading flag.

    The cache lives as long as the owning view. ``close()`` makes any
    load still in flight discard its result.
    """

    load_error_message = "Failed to load. Please try again."

    def __init__(
        self,
        backend: Backend,
        session: SessionStore,
        notifier: Optional[BaseNotifier] = None,
    ):
        self.backend = backend
        self.session = session
        self.notifier = notifier or LogNotifier()

        self.items: List[Any] = []
        self.loading = True
        self._generation = 0
        self._closed = False

    async def __aenter__(self):
        await self.load()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    @abstractmethod
    async def _fetch(self) -> List[Any]:
        """Read the entities for this collection from the backend."""

    async def load(self) -> List[Any]:
        """Replace the cache with a fresh copy from the backend."""
        self._closed = False
        self._generation += 1
        generation = self._generation
        self.loading = True

        try:
            items = await self._fetch()
        except Exception as e:
            if generation == self._generation:
                self.loading = False
                self._report(e, self.load_error_message)
            return self.items

        if generation != self._generation or self._closed:
            logger.debug(f"{type(self).__name__}: dropping stale load")
            return self.items

        self.items = items
        self.loading = False
        return self.items

    def close(self) -> None:
        self._closed = True
        self._generation += 1

    def _report(self, exc: Exception, message: str) -> ComradeError:
        error = translate_backend_error(exc)
        logger.error(f"{type(self).__name__}: {message} ({exc!r})")
        self.notifier.error(message)
        return error

    def _require_identity(self, message: str = "You must be signed in to do that") -> Identity:
        """Identity for a mutation; notifies and raises NotAuthenticated without one."""
        return self.session.require_identity(self.notifier, message)

    async def _submit(
        self,
        action: Callable[[], Awaitable[Any]],
        success_message: Optional[str],
        failure_message: str,
    ) -> Any:
        """Run a form submission: notify once either way, re-raise on failure."""
        try:
            result = await action()
        except Exception as e:
            raise self._report(e, failure_message) from e
        if success_message:
            self.notifier.success(success_message)
        return result

    async def _nicknames(self, user_ids: List[str]) -> dict:
        ids = sorted({uid for uid in user_ids if uid})
        if not ids:
            return {}
        rows = await self.backend.fetch(Query("profiles", "id,nickname").in_("id", ids))
        return {row["id"]: row.get("nickname") for row in rows}


__all__ = ["BaseCollection"]
