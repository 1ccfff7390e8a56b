"""Change notifications delivered over MQTT.

The backend publishes a message to ``<prefix>/<table>/<owner_id>``
whenever a row owned by that user is inserted, updated or deleted. The
payload is ignored: any message means "reload".
"""

import asyncio
import logging
import threading
from typing import Any

import paho.mqtt.client as mqtt

from ..config import RealtimeConfig
from ..errors import QueryError
from .base import ChangeCallback, ChangeFeed, Subscription

logger = logging.getLogger(__name__)


class MQTTChangeFeed(ChangeFeed):
    """ChangeFeed backed by a paho MQTT client running its own network thread."""

    def __init__(self, config: RealtimeConfig, connect_timeout: float = 5.0):
        self.config = config
        self._connect_timeout = connect_timeout

        # topic -> listener id -> callback; shared with the paho network thread
        self._listeners: dict[str, dict[int, ChangeCallback]] = {}
        self._lock = threading.Lock()
        self._next_listener_id = 0

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self._client.on_connect = self._handle_connect
        self._client.on_message = self._handle_message
        self._client.on_disconnect = self._handle_disconnect

        self._connected = False
        self._started = False
        self._loop: asyncio.AbstractEventLoop | None = None

    def topic_for(self, table: str, owner_id: str) -> str:
        return f"{self.config.topic_prefix}/{table}/{owner_id}"

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle connection to broker."""
        if reason_code == 0:
            self._connected = True
            logger.info(f"Connected to MQTT broker at {self.config.broker}:{self.config.port}")

            # Restore subscriptions after a reconnect
            with self._lock:
                topics = list(self._listeners)
            for topic in topics:
                client.subscribe(topic)
        else:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")

    def _handle_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        msg: mqtt.MQTTMessage,
    ) -> None:
        """Forward a notification to the event loop. Runs on the paho thread."""
        with self._lock:
            callbacks = list(self._listeners.get(msg.topic, {}).values())
        logger.debug(f"Change notification on {msg.topic} ({len(callbacks)} listeners)")

        if self._loop is None:
            return
        for callback in callbacks:
            self._loop.call_soon_threadsafe(callback)

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle disconnection from broker."""
        self._connected = False
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    async def connect(self) -> None:
        """Connect to the broker if not already connected.

        Raises:
            QueryError: If the broker could not be reached.
        """
        if self._connected:
            return

        self._loop = asyncio.get_running_loop()

        if not self._started:
            if self.config.username and self.config.password:
                self._client.username_pw_set(self.config.username, self.config.password)
            try:
                self._client.connect(self.config.broker, self.config.port, keepalive=60)
            except OSError as e:
                raise QueryError(
                    f"Could not connect to change feed at "
                    f"{self.config.broker}:{self.config.port}: {e}"
                ) from e
            self._client.loop_start()
            self._started = True

        # Wait for connection
        for _ in range(int(self._connect_timeout * 10)):
            if self._connected:
                return
            await asyncio.sleep(0.1)

        raise QueryError("Timeout waiting for change feed connection")

    async def close(self) -> None:
        """Disconnect from the broker and drop all listeners."""
        with self._lock:
            self._listeners.clear()
        if self._started:
            self._client.loop_stop()
            self._client.disconnect()
            self._started = False
        self._connected = False

    async def subscribe_to_changes(
        self, table: str, owner_id: str, on_change: ChangeCallback
    ) -> Subscription:
        await self.connect()

        topic = self.topic_for(table, owner_id)
        self._next_listener_id += 1
        listener_id = self._next_listener_id

        with self._lock:
            listeners = self._listeners.setdefault(topic, {})
            first = not listeners
            listeners[listener_id] = on_change
        if first:
            self._client.subscribe(topic)
            logger.info(f"Subscribed to topic: {topic}")

        return Subscription(
            lambda: self._release(topic, listener_id),
            name=topic,
        )

    def _release(self, topic: str, listener_id: int) -> None:
        with self._lock:
            listeners = self._listeners.get(topic)
            if not listeners:
                return
            listeners.pop(listener_id, None)
            if listeners:
                return
            del self._listeners[topic]
        if self._connected:
            self._client.unsubscribe(topic)
        logger.info(f"Unsubscribed from topic: {topic}")

    @property
    def is_connected(self) -> bool:
        """Check if connected to broker."""
        return self._connected

    @property
    def topics(self) -> list[str]:
        with self._lock:
            return list(self._listeners)
