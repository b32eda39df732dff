import logging
from typing import List, Optional, Union

from ..backend.base import Query
from ..core.errors import ValidationError
from ..models import Hustle, HustleCategory
from .base import BaseCollection

logger = logging.getLogger(__name__)


class HustlesCollection(BaseCollection):
    """Job, internship and side-project listings, newest first."""

    load_error_message = "Failed to load hustles. Please try again."

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.category_filter: Optional[HustleCategory] = None

    async def _fetch(self) -> List[Hustle]:
        rows = await self.backend.fetch(Query("hustles").order("created_at", desc=True))
        return [Hustle.from_row(row) for row in rows]

    def set_category_filter(self, category: Optional[Union[str, HustleCategory]]) -> None:
        """Restrict ``visible`` to one category; None or "all" clears it."""
        if category is None or category == "all":
            self.category_filter = None
            return
        try:
            self.category_filter = HustleCategory(category)
        except ValueError:
            raise ValidationError(f"Unknown category: {category}")

    @property
    def visible(self) -> List[Hustle]:
        if self.category_filter is None:
            return list(self.items)
        return [h for h in self.items if h.category == self.category_filter]

    async def add_hustle(
        self,
        title: str,
        description: str,
        category: Union[str, HustleCategory],
        posted_by: Optional[str] = None,
        contact_email: Optional[str] = None,
    ) -> Hustle:
        title = (title or "").strip()
        description = (description or "").strip()
        if not title or not description:
            raise ValidationError("Title and description are required")
        try:
            category = HustleCategory(category)
        except ValueError:
            raise ValidationError(f"Unknown category: {category}")
        identity = self._require_identity("Sign in to post a hustle")

        async def create() -> Hustle:
            row = await self.backend.insert("hustles", {
                "title": title,
                "description": description,
                "category": category.value,
                "posted_by": (posted_by or "").strip() or identity.display_name,
                "contact_email": contact_email,
                "user_id": identity.id,
            })
            return Hustle.from_row(row)

        hustle = await self._submit(
            create,
            "Hustle posted successfully!",
            "Failed to post hustle. Please try again.",
        )
        self.items.insert(0, hustle)
        return hustle


__all__ = ["HustlesCollection"]
