"""In-process backend with the same access policy as the hosted one.

Useful for tests and offline demos. Rows are only readable and deletable
by their owner, and inserts are rejected unless ``user_id`` matches the
signed-in user. Change notifications are delivered on the event loop of
each subscriber after the mutating call returns, like a real realtime
feed.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any

from ..errors import AuthError, MutationError, QueryError
from ..models import Bookmark, Identity, sort_newest_first
from .base import (
    AuthBackend,
    AuthCallback,
    Backend,
    ChangeCallback,
    ChangeFeed,
    MutationBackend,
    QueryBackend,
    Subscription,
)

logger = logging.getLogger(__name__)

_DEFAULT_ERRORS = {
    "session": AuthError,
    "sign_in": AuthError,
    "sign_out": AuthError,
    "query": QueryError,
    "insert": MutationError,
    "delete": MutationError,
    "subscribe": QueryError,
}


class MemoryBackend(AuthBackend, QueryBackend, MutationBackend, ChangeFeed):
    """All four capabilities backed by Python dicts."""

    def __init__(self, user: Identity | None = None):
        self._user = user
        self._rows: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._auth_listeners: dict[int, AuthCallback] = {}
        self._change_listeners: dict[
            int, tuple[str, str, ChangeCallback, asyncio.AbstractEventLoop]
        ] = {}
        self._next_listener_id = 0
        self._last_created_at: datetime | None = None
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self.delays: dict[str, float] = {}
        self.calls: list[tuple[str, ...]] = []
        self.pending_redirect: str | None = None
        self.sign_in_requests = 0

    # ==================== Test controls ====================

    def fail_next(self, operation: str, error: Exception | str = "backend unavailable") -> None:
        """Make the next call to ``operation`` raise.

        Args:
            operation: One of session, sign_in, sign_out, query, insert, delete.
            error: Exception instance, or a message wrapped in the matching
                error type.
        """
        if isinstance(error, str):
            error = _DEFAULT_ERRORS[operation](error)
        self._failures[operation].append(error)

    def complete_sign_in(self, identity: Identity) -> None:
        """Finish an interactive sign-in, as the OAuth redirect would."""
        self._user = identity
        self.pending_redirect = None
        self._emit_auth(identity)

    def expire_session(self) -> None:
        """Drop the session without a sign-out request."""
        self._user = None
        self._emit_auth(None)

    def seed(
        self,
        owner_id: str,
        url: str,
        title: str | None = None,
        table: str = "bookmarks",
    ) -> Bookmark:
        """Insert a row bypassing the access policy, as a service role would."""
        row = self._new_row(table, {"url": url, "title": title, "user_id": owner_id})
        self._notify(table, owner_id)
        return Bookmark.from_row(row)

    def rows(self, table: str = "bookmarks") -> list[Bookmark]:
        """Every row in ``table`` regardless of owner, newest first."""
        return sort_newest_first(
            [Bookmark.from_row(r) for r in self._rows[table].values()]
        )

    @property
    def live_change_subscriptions(self) -> int:
        return len(self._change_listeners)

    @property
    def live_auth_subscriptions(self) -> int:
        return len(self._auth_listeners)

    @property
    def current_user(self) -> Identity | None:
        return self._user

    # ==================== Auth ====================

    async def get_current_session(self) -> Identity | None:
        await self._enter("session")
        return self._user

    def subscribe(self, callback: AuthCallback) -> Subscription:
        listener_id = self._allocate_id()
        self._auth_listeners[listener_id] = callback
        return Subscription(
            lambda: self._auth_listeners.pop(listener_id, None),
            name=f"auth-{listener_id}",
        )

    async def sign_in_interactive(self, redirect_to: str | None = None) -> None:
        await self._enter("sign_in", redirect_to or "")
        self.sign_in_requests += 1
        self.pending_redirect = redirect_to or ""

    async def sign_out(self) -> None:
        await self._enter("sign_out")
        self._user = None
        self._emit_auth(None)

    # ==================== Query ====================

    async def query(self, table: str, owner_id: str) -> list[Bookmark]:
        await self._enter("query", table, owner_id)
        if self._user is None or self._user.id != owner_id:
            return []
        return sort_newest_first(
            [
                Bookmark.from_row(row)
                for row in self._rows[table].values()
                if row["user_id"] == owner_id
            ]
        )

    # ==================== Mutation ====================

    async def insert(self, table: str, record: dict[str, Any]) -> None:
        await self._enter("insert", table, record.get("url", ""))
        owner_id = record.get("user_id")
        if self._user is None or owner_id != self._user.id:
            raise MutationError(
                f'new row violates row-level security policy for table "{table}"'
            )
        if not record.get("url"):
            raise MutationError(
                f'null value in column "url" of relation "{table}" '
                "violates not-null constraint"
            )
        self._new_row(table, record)
        self._notify(table, owner_id)

    async def delete(self, table: str, id: str, owner_id: str) -> None:
        await self._enter("delete", table, id, owner_id)
        if self._user is None or self._user.id != owner_id:
            return
        row = self._rows[table].get(id)
        if row is None or row["user_id"] != owner_id:
            return
        del self._rows[table][id]
        self._notify(table, owner_id)

    # ==================== Changes ====================

    async def subscribe_to_changes(
        self, table: str, owner_id: str, on_change: ChangeCallback
    ) -> Subscription:
        await self._enter("subscribe", table, owner_id)
        listener_id = self._allocate_id()
        self._change_listeners[listener_id] = (
            table,
            owner_id,
            on_change,
            asyncio.get_running_loop(),
        )
        return Subscription(
            lambda: self._change_listeners.pop(listener_id, None),
            name=f"{table}-user-{owner_id}",
        )

    # ==================== Internals ====================

    async def _enter(self, operation: str, *args: str) -> None:
        self.calls.append((operation, *args))
        delay = self.delays.get(operation)
        if delay:
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    def _allocate_id(self) -> int:
        self._next_listener_id += 1
        return self._next_listener_id

    def _new_row(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        created_at = datetime.now(timezone.utc)
        if self._last_created_at and created_at <= self._last_created_at:
            created_at = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = created_at

        row = {
            "id": str(uuid.uuid4()),
            "url": record["url"],
            "title": record.get("title"),
            "user_id": record["user_id"],
            "created_at": created_at.isoformat(),
        }
        self._rows[table][row["id"]] = row
        return row

    def _emit_auth(self, identity: Identity | None) -> None:
        for callback in list(self._auth_listeners.values()):
            callback(identity)

    def _notify(self, table: str, owner_id: str) -> None:
        for sub_table, sub_owner, callback, loop in list(self._change_listeners.values()):
            if sub_table == table and sub_owner == owner_id:
                loop.call_soon_threadsafe(callback)
        logger.debug(f"Change on {table} for {owner_id}")


def create_memory_backend(
    user: Identity | None = None, table: str = "bookmarks"
) -> tuple[Backend, MemoryBackend]:
    """Build a Backend bundle whose capabilities all share one store."""
    store = MemoryBackend(user)
    return Backend(auth=store, query=store, mutation=store, changes=store, table=table), store
