"""Create and delete requests scoped to the signed-in identity."""

import logging

from .backend.base import MutationBackend
from .errors import ValidationError
from .models import Identity

logger = logging.getLogger(__name__)


class MutationGateway:
    """Sends inserts and deletes to the backend.

    The gateway never touches the snapshot. Results show up through the
    change notification that the backend emits for every mutation.
    """

    def __init__(self, mutation: MutationBackend, table: str = "bookmarks"):
        self._mutation = mutation
        self._table = table

    async def add(self, identity: Identity, url: str, title: str | None = None) -> None:
        """Save a bookmark for ``identity``.

        Args:
            identity: Owner of the new bookmark.
            url: Link to save. Surrounding whitespace is stripped.
            title: Optional title; blank titles are stored as None.

        Raises:
            ValidationError: If the URL is blank. Nothing is sent.
            MutationError: If the backend rejected the insert.
        """
        clean_url = (url or "").strip()
        if not clean_url:
            raise ValidationError("A URL is required")

        record = {
            "url": clean_url,
            "title": (title or "").strip() or None,
            "user_id": identity.id,
        }
        await self._mutation.insert(self._table, record)
        logger.info(f"Saved bookmark {clean_url} for {identity.id}")

    async def remove(self, identity: Identity, bookmark_id: str) -> None:
        """Delete a bookmark, constrained to rows owned by ``identity``.

        A bookmark that is missing or belongs to someone else matches no
        rows; that is not an error.

        Raises:
            MutationError: If the backend request failed.
        """
        await self._mutation.delete(self._table, bookmark_id, identity.id)
        logger.info(f"Deleted bookmark {bookmark_id} for {identity.id}")
