"""Tracks who is signed in and tells dependents about every transition."""

import logging
from typing import Callable

from .backend.base import AuthBackend, Subscription
from .errors import AuthError
from .models import (
    Authenticated,
    Authenticating,
    Identity,
    SessionState,
    Unauthenticated,
)

logger = logging.getLogger(__name__)

SessionListener = Callable[[SessionState], None]


class SessionTracker:
    """Owns the current SessionState.

    Listeners are called synchronously, in registration order, after the
    state has changed. Sign-in completion is never taken from the return
    value of the sign-in call; it only arrives through the auth
    subscription opened by ``initialize()``.
    """

    def __init__(self, auth: AuthBackend):
        self._auth = auth
        self._state: SessionState = Unauthenticated()
        self._listeners: list[SessionListener] = []
        self._subscription: Subscription | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def identity(self) -> Identity | None:
        return self._state.identity

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Register a transition listener.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return

        previous, self._state = self._state, state
        identity = state.identity
        logger.info(
            f"Session {previous.name} -> {state.name}"
            + (f" ({identity.display_name})" if identity else "")
        )
        for listener in list(self._listeners):
            listener(state)

    def _handle_auth_change(self, identity: Identity | None) -> None:
        if identity is None:
            self._set_state(Unauthenticated())
        else:
            self._set_state(Authenticated(identity))

    async def initialize(self) -> None:
        """Pick up an existing session and start following auth changes.

        Calling this more than once has no effect.

        Raises:
            AuthError: If the existing session could not be checked. The
                state is left Unauthenticated but the subscription is still
                opened, so a later sign-in is observed.
        """
        if self._subscription is not None:
            return

        self._set_state(Authenticating())
        try:
            identity = await self._auth.get_current_session()
        except AuthError:
            self._set_state(Unauthenticated())
            raise
        else:
            self._handle_auth_change(identity)
        finally:
            self._subscription = self._auth.subscribe(self._handle_auth_change)

    async def sign_in(self, redirect_to: str | None = None) -> None:
        """Start an interactive sign-in.

        Raises:
            AuthError: If the flow could not be started. The state reverts
                to Unauthenticated.
        """
        self._set_state(Authenticating())
        try:
            await self._auth.sign_in_interactive(redirect_to)
        except AuthError as e:
            logger.warning(f"Sign-in failed: {e}")
            self._set_state(Unauthenticated())
            raise

    async def sign_out(self) -> None:
        """Sign out of the current session.

        Raises:
            AuthError: If sign-out failed. The previous state is restored
                unless the auth subscription delivered a newer one.
        """
        previous = self._state
        self._set_state(Authenticating())
        try:
            await self._auth.sign_out()
        except AuthError as e:
            logger.warning(f"Sign-out failed: {e}")
            # An auth event that arrived meanwhile wins over the saved state
            if self._state == Authenticating():
                self._set_state(previous)
            raise

    def close(self) -> None:
        """Release the auth subscription."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
