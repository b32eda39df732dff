import logging
from datetime import datetime, timezone
from typing import List, Optional, Union

from ..backend.base import Query, parse_timestamp
from ..core.errors import ValidationError
from ..models import CampusEvent
from .base import BaseCollection

logger = logging.getLogger(__name__)


def _event_date(value: Union[str, datetime]) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    value = (value or "").strip()
    if not value:
        raise ValidationError("Event date is required")
    if parse_timestamp(value) is None:
        raise ValidationError(f"Invalid event date: {value}")
    return value


def _starts_at(event: CampusEvent) -> datetime:
    return parse_timestamp(event.event_date) or datetime.min.replace(tzinfo=timezone.utc)


class EventsCollection(BaseCollection):
    """Campus events ordered by date, soonest first."""

    load_error_message = "Failed to load events. Please try again."

    async def _fetch(self) -> List[CampusEvent]:
        rows = await self.backend.fetch(Query("events").order("event_date"))
        return [CampusEvent.from_row(row) for row in rows]

    def upcoming(self, now: Optional[datetime] = None) -> List[CampusEvent]:
        """Events that have not started yet."""
        cutoff = parse_timestamp(now or datetime.now(timezone.utc))
        return [e for e in self.items if _starts_at(e) >= cutoff]

    async def add_event(
        self,
        title: str,
        description: str,
        event_date: Union[str, datetime],
        location: str,
        organizer: Optional[str] = None,
        campus: Optional[str] = None,
    ) -> CampusEvent:
        title = (title or "").strip()
        location = (location or "").strip()
        if not title or not location:
            raise ValidationError("Title and location are required")
        date = _event_date(event_date)
        identity = self._require_identity("Sign in to post an event")

        async def create() -> CampusEvent:
            row = await self.backend.insert("events", {
                "title": title,
                "description": (description or "").strip(),
                "event_date": date,
                "location": location,
                "organizer": (organizer or "").strip() or identity.display_name,
                "campus": campus,
                "user_id": identity.id,
            })
            return CampusEvent.from_row(row)

        event = await self._submit(
            create,
            "Event posted successfully!",
            "Failed to post event. Please try again.",
        )
        self.items.append(event)
        self.items.sort(key=_starts_at)
        return event


__all__ = ["EventsCollection"]
