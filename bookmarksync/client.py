"""Top-level controller tying session, sync and mutations together."""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from .backend import create_backend
from .backend.base import Backend
from .config import Config
from .errors import AuthError, ConfigurationMissing, MutationError
from .gateway import MutationGateway
from .models import Authenticating, Bookmark, SessionState, Unauthenticated
from .session import SessionTracker
from .synchronizer import RecordSynchronizer

logger = logging.getLogger(__name__)

StatusListener = Callable[["ClientStatus"], None]

NOT_SIGNED_IN = "Sign in to manage your bookmarks"


@dataclass(frozen=True)
class ClientStatus:
    """Everything a user interface needs to render the client."""

    ready: bool
    session: SessionState
    bookmarks: tuple[Bookmark, ...]
    loading: bool
    auth_loading: bool
    error: str | None = None
    configuration_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ready": self.ready,
            "session": self.session.to_dict(),
            "bookmarks": [b.to_dict() for b in self.bookmarks],
            "loading": self.loading,
            "auth_loading": self.auth_loading,
            "error": self.error,
            "configuration_error": self.configuration_error,
        }


class BookmarkClient:
    """Owns the session tracker, synchronizer and gateway for one process.

    Errors from backend calls are caught here, logged, and kept in
    ``status.error`` as a displayable message. Nothing is retried.

    Without a backend the client is not ``ready``: every operation is a
    no-op and ``status.configuration_error`` explains why.
    """

    def __init__(
        self,
        backend: Backend | None,
        configuration_error: str | None = None,
    ):
        self.backend = backend
        self._configuration_error = configuration_error
        self._error: str | None = None
        self._mutations_in_flight = 0
        self._listeners: list[StatusListener] = []
        self._started = False

        self.tracker: SessionTracker | None = None
        self.synchronizer: RecordSynchronizer | None = None
        self.gateway: MutationGateway | None = None

        if backend is not None:
            self.tracker = SessionTracker(backend.auth)
            self.synchronizer = RecordSynchronizer(
                backend.query,
                backend.changes,
                table=backend.table,
                on_error=self._report_error,
            )
            self.gateway = MutationGateway(backend.mutation, table=backend.table)

            # The synchronizer must see every transition before anyone else
            self.tracker.add_listener(self.synchronizer.handle_session_state)
            self.tracker.add_listener(lambda state: self._notify())
            self.synchronizer.add_listener(self._notify)

    @classmethod
    def from_config(cls, config: Config) -> "BookmarkClient":
        """Build a client, degrading to a non-functional one if unconfigured."""
        try:
            backend = create_backend(config)
        except ConfigurationMissing as e:
            logger.warning(f"Client disabled: {e}")
            return cls(None, configuration_error=str(e))
        return cls(backend)

    # ==================== Status ====================

    @property
    def ready(self) -> bool:
        return self.backend is not None

    @property
    def session(self) -> SessionState:
        if self.tracker is None:
            return Unauthenticated()
        return self.tracker.state

    @property
    def bookmarks(self) -> tuple[Bookmark, ...]:
        if self.synchronizer is None:
            return ()
        return self.synchronizer.snapshot

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def status(self) -> ClientStatus:
        session = self.session
        loading = self._mutations_in_flight > 0 or (
            self.synchronizer is not None and self.synchronizer.loading
        )
        return ClientStatus(
            ready=self.ready,
            session=session,
            bookmarks=self.bookmarks,
            loading=loading,
            auth_loading=isinstance(session, Authenticating),
            error=self._error,
            configuration_error=self._configuration_error,
        )

    def add_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Register a callback that receives the status after every change."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        if not self._listeners:
            return
        status = self.status
        for listener in list(self._listeners):
            listener(status)

    def _report_error(self, message: str) -> None:
        self._error = message
        self._notify()

    def _clear_error(self) -> None:
        if self._error is not None:
            self._error = None
            self._notify()

    def _check_ready(self) -> bool:
        if not self.ready:
            self._report_error(self._configuration_error or "Backend is not configured")
            return False
        return True

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Resume any existing session and begin following auth changes."""
        if not self.ready or self._started:
            return
        self._started = True
        try:
            await self.tracker.initialize()
        except AuthError as e:
            logger.warning(f"Could not restore session: {e}")
            self._report_error(str(e))

    async def stop(self) -> None:
        """Release every subscription and close backend connections."""
        if not self.ready:
            return
        self.tracker.close()
        await self.synchronizer.close()
        await self.backend.close()
        self._started = False
        logger.info("Client stopped")

    async def __aenter__(self) -> "BookmarkClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def wait_idle(self) -> None:
        """Wait for background reloads to settle."""
        if self.synchronizer is not None:
            await self.synchronizer.wait_idle()

    # ==================== Auth ====================

    async def sign_in(self, redirect_to: str | None = None) -> bool:
        if not self._check_ready():
            return False
        self._clear_error()
        try:
            await self.tracker.sign_in(redirect_to)
        except AuthError as e:
            self._report_error(str(e))
            return False
        return True

    async def sign_out(self) -> bool:
        if not self._check_ready():
            return False
        self._clear_error()
        try:
            await self.tracker.sign_out()
        except AuthError as e:
            self._report_error(str(e))
            return False
        return True

    # ==================== Bookmarks ====================

    async def refresh(self) -> bool:
        """Reload the snapshot on demand."""
        if not self._check_ready():
            return False
        if self.session.identity is None:
            self._report_error(NOT_SIGNED_IN)
            return False
        self._clear_error()
        return await self.synchronizer.reload()

    async def add_bookmark(self, url: str, title: str | None = None) -> bool:
        """Save a bookmark for the signed-in user.

        Returns:
            True if the backend accepted it. The snapshot updates later,
            when the change notification arrives.
        """
        if not self._check_ready():
            return False
        identity = self.session.identity
        if identity is None:
            self._report_error(NOT_SIGNED_IN)
            return False

        self._clear_error()
        self._mutations_in_flight += 1
        self._notify()
        try:
            await self.gateway.add(identity, url, title)
        except MutationError as e:
            logger.warning(f"Failed to save bookmark: {e}")
            self._error = str(e)
            return False
        finally:
            self._mutations_in_flight -= 1
            self._notify()
        return True

    async def remove_bookmark(self, bookmark_id: str) -> bool:
        """Delete one of the signed-in user's bookmarks."""
        if not self._check_ready():
            return False
        identity = self.session.identity
        if identity is None:
            self._report_error(NOT_SIGNED_IN)
            return False

        self._clear_error()
        self._mutations_in_flight += 1
        self._notify()
        try:
            await self.gateway.remove(identity, bookmark_id)
        except MutationError as e:
            logger.warning(f"Failed to delete bookmark {bookmark_id}: {e}")
            self._error = str(e)
            return False
        finally:
            self._mutations_in_flight -= 1
            self._notify()
        return True
