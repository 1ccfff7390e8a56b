"""Tests for the MQTT change feed."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from bookmarksync.backend.mqtt_feed import MQTTChangeFeed
from bookmarksync.config import RealtimeConfig
from bookmarksync.errors import QueryError


@pytest.fixture
def mock_client():
    with patch("bookmarksync.backend.mqtt_feed.mqtt.Client") as client_cls:
        client = MagicMock()
        client_cls.return_value = client
        yield client


@pytest.fixture
def feed(mock_client):
    config = RealtimeConfig(broker="broker.local", port=1884, username="u", password="p")
    feed = MQTTChangeFeed(config, connect_timeout=0.2)
    # Simulate paho's network thread reporting a successful connect
    mock_client.loop_start.side_effect = lambda: feed._handle_connect(mock_client, None, None, 0)
    return feed


def message(topic: str) -> MagicMock:
    msg = MagicMock()
    msg.topic = topic
    msg.payload = b"{}"
    return msg


class TestConnection:
    """Tests for connecting to the broker."""

    @pytest.mark.asyncio
    async def test_connect(self, feed, mock_client):
        await feed.connect()

        assert feed.is_connected
        mock_client.username_pw_set.assert_called_once_with("u", "p")
        mock_client.connect.assert_called_once_with("broker.local", 1884, keepalive=60)
        mock_client.loop_start.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_refused(self, feed, mock_client):
        mock_client.connect.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(QueryError, match="broker.local:1884"):
            await feed.connect()

        assert not feed.is_connected

    @pytest.mark.asyncio
    async def test_connect_timeout(self, feed, mock_client):
        mock_client.loop_start.side_effect = None

        with pytest.raises(QueryError, match="Timeout"):
            await feed.connect()

    @pytest.mark.asyncio
    async def test_close(self, feed, mock_client):
        await feed.connect()
        await feed.close()

        assert not feed.is_connected
        mock_client.loop_stop.assert_called_once()
        mock_client.disconnect.assert_called_once()

    def test_rejected_connect_stays_disconnected(self, feed, mock_client):
        feed._handle_connect(mock_client, None, None, 5)

        assert not feed.is_connected


class TestSubscriptions:
    """Tests for subscribe_to_changes()."""

    @pytest.mark.asyncio
    async def test_topic_layout(self, feed):
        assert feed.topic_for("bookmarks", "alice") == "bookmarksync/bookmarks/alice"

    @pytest.mark.asyncio
    async def test_message_triggers_callback(self, feed, mock_client):
        calls = []
        subscription = await feed.subscribe_to_changes("bookmarks", "alice", lambda: calls.append(1))

        mock_client.subscribe.assert_called_once_with("bookmarksync/bookmarks/alice")
        assert subscription.name == "bookmarksync/bookmarks/alice"

        feed._handle_message(mock_client, None, message("bookmarksync/bookmarks/alice"))
        feed._handle_message(mock_client, None, message("bookmarksync/bookmarks/bob"))
        await asyncio.sleep(0)

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_shared_topic_subscribed_once(self, feed, mock_client):
        first = await feed.subscribe_to_changes("bookmarks", "alice", lambda: None)
        second = await feed.subscribe_to_changes("bookmarks", "alice", lambda: None)

        assert mock_client.subscribe.call_count == 1

        first.unsubscribe()
        mock_client.unsubscribe.assert_not_called()
        assert feed.topics == ["bookmarksync/bookmarks/alice"]

        second.unsubscribe()
        mock_client.unsubscribe.assert_called_once_with("bookmarksync/bookmarks/alice")
        assert feed.topics == []

    @pytest.mark.asyncio
    async def test_released_listener_not_called(self, feed, mock_client):
        calls = []
        subscription = await feed.subscribe_to_changes("bookmarks", "alice", lambda: calls.append(1))
        subscription.unsubscribe()
        subscription.unsubscribe()

        feed._handle_message(mock_client, None, message("bookmarksync/bookmarks/alice"))
        await asyncio.sleep(0)

        assert calls == []
        assert not subscription.active

    @pytest.mark.asyncio
    async def test_reconnect_restores_topics(self, feed, mock_client):
        await feed.subscribe_to_changes("bookmarks", "alice", lambda: None)
        mock_client.subscribe.reset_mock()

        feed._handle_disconnect(mock_client, None, None, 7)
        assert not feed.is_connected
        feed._handle_connect(mock_client, None, None, 0)

        mock_client.subscribe.assert_called_once_with("bookmarksync/bookmarks/alice")

    @pytest.mark.asyncio
    async def test_subscribe_fails_when_broker_unreachable(self, feed, mock_client):
        mock_client.connect.side_effect = OSError("no route to host")

        with pytest.raises(QueryError):
            await feed.subscribe_to_changes("bookmarks", "alice", lambda: None)

        assert feed.topics == []

    @pytest.mark.asyncio
    async def test_release_during_reconnect_restore(self, feed, mock_client):
        await feed.subscribe_to_changes("bookmarks", "alice", lambda: None)
        bob = await feed.subscribe_to_changes("bookmarks", "bob", lambda: None)
        mock_client.subscribe.reset_mock()

        # Another thread drops a topic while paho is restoring subscriptions
        mock_client.subscribe.side_effect = lambda topic: bob.unsubscribe()
        feed._handle_connect(mock_client, None, None, 0)

        assert mock_client.subscribe.call_count == 2
        assert feed.topics == ["bookmarksync/bookmarks/alice"]

    @pytest.mark.asyncio
    async def test_message_while_listeners_change(self, feed, mock_client):
        calls = []
        first = await feed.subscribe_to_changes("bookmarks", "alice", lambda: calls.append("first"))
        await feed.subscribe_to_changes("bookmarks", "alice", lambda: calls.append("second"))

        feed._handle_message(mock_client, None, message("bookmarksync/bookmarks/alice"))
        first.unsubscribe()
        await asyncio.sleep(0)

        # Callbacks were copied before the release, so both still fire once
        assert sorted(calls) == ["first", "second"]
