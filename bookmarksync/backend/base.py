"""Capability interfaces that a bookmark backend must provide."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from ..models import Bookmark, Identity

AuthCallback = Callable[[Identity | None], None]
ChangeCallback = Callable[[], None]


class Subscription:
    """Handle for a live subscription.

    ``unsubscribe()`` may be called any number of times; only the first
    call releases the underlying resource.
    """

    def __init__(self, release: Callable[[], None], name: str = ""):
        self._release: Callable[[], None] | None = release
        self.name = name

    @property
    def active(self) -> bool:
        return self._release is not None

    def unsubscribe(self) -> None:
        release, self._release = self._release, None
        if release is not None:
            release()

    def __repr__(self) -> str:
        state = "active" if self.active else "released"
        return f"<Subscription {self.name or hex(id(self))} {state}>"


class AuthBackend(ABC):
    """Identity provider."""

    @abstractmethod
    async def get_current_session(self) -> Identity | None:
        """Return the identity of an already valid session, if any.

        Raises:
            AuthError: If the session could not be checked.
        """
        pass

    @abstractmethod
    def subscribe(self, callback: AuthCallback) -> Subscription:
        """Register for auth state changes.

        Args:
            callback: Called with the new identity, or None after sign-out.

        Returns:
            Subscription handle.
        """
        pass

    @abstractmethod
    async def sign_in_interactive(self, redirect_to: str | None = None) -> None:
        """Begin an interactive sign-in flow.

        Completion is reported only through subscribed callbacks.

        Raises:
            AuthError: If the flow could not be started.
        """
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        """End the current session.

        Raises:
            AuthError: If sign-out failed.
        """
        pass


class QueryBackend(ABC):
    """Read access to bookmark rows."""

    @abstractmethod
    async def query(self, table: str, owner_id: str) -> list[Bookmark]:
        """Fetch all rows owned by ``owner_id``, newest first.

        Raises:
            QueryError: If the query failed.
        """
        pass


class MutationBackend(ABC):
    """Write access to bookmark rows."""

    @abstractmethod
    async def insert(self, table: str, record: dict[str, Any]) -> None:
        """Insert one row.

        Raises:
            MutationError: If the insert was rejected or failed.
        """
        pass

    @abstractmethod
    async def delete(self, table: str, id: str, owner_id: str) -> None:
        """Delete rows matching both ``id`` and ``owner_id``.

        Matching zero rows is not an error.

        Raises:
            MutationError: If the request failed.
        """
        pass


class ChangeFeed(ABC):
    """Source of table change notifications."""

    @abstractmethod
    async def subscribe_to_changes(
        self, table: str, owner_id: str, on_change: ChangeCallback
    ) -> Subscription:
        """Call ``on_change`` whenever any row owned by ``owner_id`` changes.

        Notifications carry no payload; callers are expected to reload.
        """
        pass


@dataclass
class Backend:
    """The set of capabilities the client depends on."""

    auth: AuthBackend
    query: QueryBackend
    mutation: MutationBackend
    changes: ChangeFeed
    table: str = "bookmarks"

    async def close(self) -> None:
        """Release any connections held by the capabilities."""
        seen: set[int] = set()
        for capability in (self.auth, self.query, self.mutation, self.changes):
            if id(capability) in seen:
                continue
            seen.add(id(capability))
            close = getattr(capability, "close", None)
            if close is not None:
                await close()
