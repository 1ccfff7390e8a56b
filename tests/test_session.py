"""Tests for the SessionTracker."""

import asyncio

import pytest

from bookmarksync.backend.memory import MemoryBackend
from bookmarksync.errors import AuthError
from bookmarksync.models import (
    Authenticated,
    Authenticating,
    Identity,
    Unauthenticated,
)
from bookmarksync.session import SessionTracker

ALICE = Identity(id="alice", email="alice@example.com")


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def tracker(backend):
    return SessionTracker(backend)


@pytest.fixture
def transitions(tracker):
    """Every state the tracker announces, in order."""
    seen = []
    tracker.add_listener(seen.append)
    return seen


class TestSessionTrackerInitialize:
    """Tests for initialize()."""

    @pytest.mark.asyncio
    async def test_no_existing_session(self, tracker, transitions, backend):
        await tracker.initialize()

        assert tracker.state == Unauthenticated()
        assert transitions == [Authenticating(), Unauthenticated()]
        assert tracker.subscribed
        assert backend.live_auth_subscriptions == 1

    @pytest.mark.asyncio
    async def test_existing_session(self):
        backend = MemoryBackend(ALICE)
        tracker = SessionTracker(backend)

        await tracker.initialize()

        assert tracker.state == Authenticated(ALICE)
        assert tracker.identity == ALICE

    @pytest.mark.asyncio
    async def test_initialize_twice_keeps_one_subscription(self, tracker, backend):
        await tracker.initialize()
        await tracker.initialize()

        assert backend.live_auth_subscriptions == 1

    @pytest.mark.asyncio
    async def test_session_check_failure(self, tracker, backend):
        backend.fail_next("session", "token endpoint unreachable")

        with pytest.raises(AuthError, match="unreachable"):
            await tracker.initialize()

        assert tracker.state == Unauthenticated()
        # Still listening, so a later sign-in is picked up
        assert tracker.subscribed
        backend.complete_sign_in(ALICE)
        assert tracker.state == Authenticated(ALICE)

    @pytest.mark.asyncio
    async def test_close_releases_subscription(self, tracker, backend):
        await tracker.initialize()
        tracker.close()

        assert backend.live_auth_subscriptions == 0
        assert not tracker.subscribed


class TestSessionTrackerSignIn:
    """Tests for sign_in()."""

    @pytest.mark.asyncio
    async def test_completion_only_through_subscription(self, tracker, transitions, backend):
        await tracker.initialize()
        transitions.clear()

        await tracker.sign_in("http://localhost/callback")

        # The call returning does not mean the user is signed in
        assert tracker.state == Authenticating()

        backend.complete_sign_in(ALICE)

        assert tracker.state == Authenticated(ALICE)
        assert transitions == [Authenticating(), Authenticated(ALICE)]

    @pytest.mark.asyncio
    async def test_failure_reverts_to_unauthenticated(self, tracker, transitions, backend):
        await tracker.initialize()
        transitions.clear()
        backend.fail_next("sign_in", "popup blocked")

        with pytest.raises(AuthError, match="popup blocked"):
            await tracker.sign_in()

        assert tracker.state == Unauthenticated()
        assert transitions == [Authenticating(), Unauthenticated()]


class TestSessionTrackerSignOut:
    """Tests for sign_out()."""

    @pytest.mark.asyncio
    async def test_sign_out(self):
        transitions = []
        backend = MemoryBackend(ALICE)
        tracker = SessionTracker(backend)
        await tracker.initialize()
        tracker.add_listener(transitions.append)

        await tracker.sign_out()

        assert tracker.state == Unauthenticated()
        assert transitions == [Authenticating(), Unauthenticated()]

    @pytest.mark.asyncio
    async def test_failure_restores_previous_state(self):
        backend = MemoryBackend(ALICE)
        tracker = SessionTracker(backend)
        await tracker.initialize()
        backend.fail_next("sign_out", "auth server down")

        with pytest.raises(AuthError):
            await tracker.sign_out()

        assert tracker.state == Authenticated(ALICE)

    @pytest.mark.asyncio
    async def test_failure_keeps_state_delivered_meanwhile(self):
        backend = MemoryBackend(ALICE)
        tracker = SessionTracker(backend)
        await tracker.initialize()
        backend.delays["sign_out"] = 0.05
        backend.fail_next("sign_out", "auth server down")

        task = asyncio.create_task(tracker.sign_out())
        await asyncio.sleep(0)
        assert tracker.state == Authenticating()

        # The session ends on the server while the request is in flight
        backend.expire_session()
        with pytest.raises(AuthError):
            await task

        assert tracker.state == Unauthenticated()
        assert tracker.identity is None

    @pytest.mark.asyncio
    async def test_duplicate_events_are_ignored(self):
        transitions = []
        backend = MemoryBackend(ALICE)
        tracker = SessionTracker(backend)
        await tracker.initialize()
        tracker.add_listener(transitions.append)

        backend.complete_sign_in(ALICE)

        assert transitions == []

    @pytest.mark.asyncio
    async def test_remove_listener(self, tracker, backend):
        seen = []
        remove = tracker.add_listener(seen.append)
        remove()

        await tracker.initialize()

        assert seen == []
