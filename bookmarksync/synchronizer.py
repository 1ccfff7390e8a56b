"""Keeps the bookmark snapshot of the signed-in identity current.

Every change notification triggers a full reload; the snapshot is
replaced wholesale and never patched. Overlapping reloads race and the
last one to finish wins. A reload or subscription that completes after
its identity stopped being current is thrown away.
"""

import asyncio
import logging
from typing import Callable, Coroutine, Any

from .backend.base import ChangeFeed, QueryBackend, Subscription
from .errors import BookmarkSyncError, QueryError
from .models import Bookmark, Identity, SessionState

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[], None]
ErrorReporter = Callable[[str], None]


class RecordSynchronizer:
    """Maintains the snapshot for exactly the current identity."""

    def __init__(
        self,
        query: QueryBackend,
        changes: ChangeFeed,
        table: str = "bookmarks",
        on_error: ErrorReporter | None = None,
    ):
        """Initialize the synchronizer.

        Args:
            query: Capability used to load rows.
            changes: Capability used to watch for changes.
            table: Table holding the bookmarks.
            on_error: Called with a displayable message when a reload or
                subscription fails.
        """
        self._query = query
        self._changes = changes
        self._table = table
        self._on_error = on_error

        self._identity: Identity | None = None
        # Bumped on every deactivation; stale async results compare against it
        self._generation = 0
        self._subscription: Subscription | None = None
        self._snapshot: tuple[Bookmark, ...] = ()
        self._pending_reloads = 0
        self._tasks: set[asyncio.Task] = set()
        self._listeners: list[SnapshotListener] = []

    @property
    def snapshot(self) -> tuple[Bookmark, ...]:
        return self._snapshot

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def subscription(self) -> Subscription | None:
        return self._subscription

    @property
    def loading(self) -> bool:
        return self._pending_reloads > 0

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a callback fired whenever snapshot or loading changes."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    def _report(self, message: str) -> None:
        if self._on_error is not None:
            self._on_error(message)

    def _is_current(self, identity: Identity, generation: int | None = None) -> bool:
        if generation is not None and generation != self._generation:
            return False
        return self._identity is not None and self._identity.id == identity.id

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background sync task failed: {exc}", exc_info=exc)

    # ==================== Session transitions ====================

    def handle_session_state(self, state: SessionState) -> None:
        """React to a session transition. Called synchronously by the tracker."""
        identity = state.identity
        if (
            identity is not None
            and self._identity is not None
            and identity.id == self._identity.id
        ):
            # Same identity again: keep the live subscription and snapshot
            return

        self.deactivate()

        if identity is not None:
            self._identity = identity
            self._spawn(self._activate(identity, self._generation))

    def deactivate(self) -> None:
        """Release the subscription and clear the snapshot."""
        self._generation += 1

        if self._subscription is not None:
            logger.info(f"Releasing change subscription {self._subscription.name}")
            self._subscription.unsubscribe()
            self._subscription = None

        changed = self._identity is not None or bool(self._snapshot)
        self._identity = None
        self._snapshot = ()
        if changed:
            self._notify()

    async def _activate(self, identity: Identity, generation: int) -> None:
        if not self._is_current(identity, generation):
            return
        logger.info(f"Starting sync for {identity.display_name}")
        self._spawn(self.reload(identity))
        await self.open_subscription(identity)

    # ==================== Loading ====================

    async def reload(self, identity: Identity | None = None) -> bool:
        """Replace the snapshot with the backend's current rows.

        On failure the previous snapshot is kept and the error reported.

        Returns:
            True if the snapshot was replaced.
        """
        identity = identity or self._identity
        if identity is None or not self._is_current(identity):
            return False

        generation = self._generation
        self._pending_reloads += 1
        self._notify()

        try:
            bookmarks = await self._query.query(self._table, identity.id)
        except QueryError as e:
            if self._is_current(identity, generation):
                logger.warning(f"Failed to load bookmarks for {identity.id}: {e}")
                self._report(str(e))
            return False
        else:
            if not self._is_current(identity, generation):
                logger.debug(f"Discarding reload for previous identity {identity.id}")
                return False
            self._snapshot = tuple(bookmarks)
            logger.debug(f"Loaded {len(bookmarks)} bookmarks for {identity.id}")
            return True
        finally:
            self._pending_reloads -= 1
            self._notify()

    # ==================== Change notifications ====================

    async def open_subscription(self, identity: Identity) -> Subscription | None:
        """Watch ``identity``'s rows and reload on any change.

        At most one subscription is held; calling this again for the same
        identity returns the existing one.
        """
        if not self._is_current(identity):
            return None
        if self._subscription is not None:
            return self._subscription

        generation = self._generation
        try:
            subscription = await self._changes.subscribe_to_changes(
                self._table,
                identity.id,
                lambda: self._handle_change(generation),
            )
        except BookmarkSyncError as e:
            if self._is_current(identity, generation):
                logger.warning(f"Could not subscribe to changes: {e}")
                self._report(str(e))
            return None

        if not self._is_current(identity, generation) or self._subscription is not None:
            # Identity changed, or another open won the race
            subscription.unsubscribe()
            return self._subscription

        self._subscription = subscription
        logger.info(f"Subscribed to changes via {subscription.name}")
        return subscription

    def _handle_change(self, generation: int) -> None:
        identity = self._identity
        if identity is None or generation != self._generation:
            return
        logger.debug(f"Change notification for {identity.id}, reloading")
        self._spawn(self.reload(identity))

    # ==================== Lifecycle ====================

    async def wait_idle(self) -> None:
        """Wait until no background reload or subscription task is running."""
        while True:
            # Let queued notification callbacks spawn their reloads first
            await asyncio.sleep(0)
            if not self._tasks:
                return
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Deactivate and cancel any background work."""
        self.deactivate()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
