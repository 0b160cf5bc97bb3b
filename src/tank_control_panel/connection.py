"""Broker connection lifecycle for the tank control panel.

The ConnectionManager owns the one paho-mqtt client of a session. paho's
network loop runs on its own thread and takes care of reconnecting with
bounded exponential backoff; this class turns its callbacks into
ConnectionState transitions, re-subscribes to the tank topics after every
successful connect and hands inbound messages to registered listeners.

Nothing here raises into the caller's control flow: failures are logged and
reported through state listeners or publish completion callbacks.
"""

import logging
import threading
import uuid
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

import paho.mqtt.client as mqtt
from paho.mqtt.reasoncodes import ReasonCode

from .config import Endpoint, MQTTConfig
from .topics import SUBSCRIPTION_TOPICS

logger = logging.getLogger(__name__)

StateListener = Callable[["ConnectionState"], None]
MessageListener = Callable[[str, bytes], None]
PublishCallback = Callable[[bool], None]


class ConnectionState(str, Enum):
    """Health of the broker link."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAULTED = "faulted"


def make_client_id(prefix: str) -> str:
    """Unique client identity per connection manager."""
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _is_failure(reason_code: Union[ReasonCode, int]) -> bool:
    if isinstance(reason_code, ReasonCode):
        return reason_code.is_failure
    return reason_code != 0


class ConnectionManager:
    """One outbound link to the broker, with reconnect and resubscribe."""

    def __init__(self, config: MQTTConfig, topics: Optional[List[str]] = None):
        self.config = config
        self.topics = list(topics if topics is not None else SUBSCRIPTION_TOPICS)
        self.client_id = make_client_id(config.client_id_prefix)

        self._client: Optional[mqtt.Client] = None
        self._state = ConnectionState.DISCONNECTED
        self._closed = False
        self._lock = threading.RLock()

        self._state_listeners: List[StateListener] = []
        self._message_listeners: List[MessageListener] = []

        # mid -> completion callback, for publishes still awaiting the broker
        self._pending: Dict[int, Optional[PublishCallback]] = {}
        # mid -> outcome, for acks that arrived before publish() registered the mid
        self._early_acks: Dict[int, bool] = {}

        # Stats
        self._messages_published = 0
        self._messages_dropped = 0
        self._connect_count = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "messages_published": self._messages_published,
            "messages_dropped": self._messages_dropped,
            "connect_count": self._connect_count,
        }

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_message_listener(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    def connect(self, endpoint: Optional[Union[Endpoint, str]] = None) -> bool:
        """Start connecting in the background.

        Returns True once the network loop is running; the outcome of the
        attempt is reported through state listeners. Retries continue until
        ``close()`` is called.
        """
        if self._closed:
            logger.warning("Connection manager is closed - not connecting")
            return False
        if self._client is not None:
            logger.debug("Connect already in progress")
            return True

        if endpoint is None:
            endpoint = self.config.endpoint
        elif isinstance(endpoint, str):
            endpoint = Endpoint.from_url(endpoint)

        self._set_state(ConnectionState.CONNECTING)

        try:
            self._client = self._create_client(endpoint)
            logger.info(f"Connecting to MQTT broker {endpoint.url} as {self.client_id}")
            self._client.connect_async(
                endpoint.host, endpoint.port, keepalive=self.config.keepalive
            )
            self._client.loop_start()
        except Exception as e:
            logger.error(f"Failed to start MQTT connection: {e}")
            self._client = None
            self._set_state(ConnectionState.FAULTED)
            return False

        return True

    def close(self) -> None:
        """Tear down the link. Idempotent; no publishes are accepted afterwards."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            client = self._client

        if client is not None:
            try:
                client.disconnect()
                client.loop_stop()
            except Exception as e:
                logger.error(f"Error while closing MQTT connection: {e}")

        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            self._early_acks.clear()

        for callback in pending:
            self._complete(callback, False)

        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from MQTT broker")

    def publish(
        self,
        topic: str,
        payload: str,
        on_complete: Optional[PublishCallback] = None,
    ) -> bool:
        """Queue a publish.

        Returns whether the message was handed to the client. ``on_complete``
        later receives True once the broker has taken the message, or False
        if it was dropped; when the publish is refused up front it is called
        before this method returns.
        """
        if self._closed:
            logger.warning(f"Publish to {topic} after teardown ignored")
            self._complete(on_complete, False)
            return False

        client = self._client
        if client is None or self._state != ConnectionState.CONNECTED:
            self._messages_dropped += 1
            logger.warning(f"Not connected to MQTT broker - dropped publish to {topic}")
            self._complete(on_complete, False)
            return False

        try:
            info = client.publish(topic, payload, qos=self.config.qos)
        except Exception as e:
            self._messages_dropped += 1
            logger.error(f"Error publishing to {topic}: {e}")
            self._complete(on_complete, False)
            return False

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._messages_dropped += 1
            logger.warning(f"Failed to publish to {topic}: {mqtt.error_string(info.rc)}")
            self._complete(on_complete, False)
            return False

        with self._lock:
            early = self._early_acks.pop(info.mid, None)
            if early is None:
                self._pending[info.mid] = on_complete

        if early is not None:
            self._record_outcome(info.mid, early, on_complete)

        logger.debug(f"Published {payload!r} to {topic} (mid={info.mid})")
        return True

    def _create_client(self, endpoint: Endpoint) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            clean_session=self.config.clean_session,
            transport=endpoint.transport,
        )

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        if endpoint.transport == "websockets":
            client.ws_set_options(path=endpoint.path)

        if endpoint.tls:
            client.tls_set()

        client.connect_timeout = self.config.connect_timeout
        client.reconnect_delay_set(
            min_delay=self.config.reconnect_min_delay,
            max_delay=self.config.reconnect_max_delay,
        )

        client.on_pre_connect = self._on_pre_connect
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe
        client.on_publish = self._on_publish
        return client

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            if state == self._state:
                return
            old_state = self._state
            self._state = state

        logger.debug(f"Connection state: {old_state.value} -> {state.value}")
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connection state listener failed")

    def _complete(self, callback: Optional[PublishCallback], success: bool) -> None:
        if callback is None:
            return
        try:
            callback(success)
        except Exception:
            logger.exception("Publish completion callback failed")

    def _subscribe_all(self, client: mqtt.Client) -> None:
        """Subscribe to the whole topic table; the broker keeps nothing between sessions."""
        try:
            result, mid = client.subscribe([(topic, self.config.qos) for topic in self.topics])
        except Exception as e:
            logger.error(f"Subscribe failed: {e}")
            return

        if result == mqtt.MQTT_ERR_SUCCESS:
            logger.info(f"Subscribed to {', '.join(self.topics)}")
        else:
            logger.error(f"Subscribe failed: {mqtt.error_string(result)}")

    def _on_pre_connect(self, client, userdata) -> None:
        if not self._closed:
            self._set_state(ConnectionState.CONNECTING)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        """Handle connection callback."""
        if self._closed:
            return

        if _is_failure(reason_code):
            logger.error(f"Connection refused by broker: {reason_code}")
            self._set_state(ConnectionState.FAULTED)
            return

        self._connect_count += 1
        logger.info("Connected to MQTT broker")
        self._set_state(ConnectionState.CONNECTED)
        self._subscribe_all(client)

    def _on_connect_fail(self, client, userdata) -> None:
        if self._closed:
            return
        logger.error("Could not reach MQTT broker, will retry")
        self._set_state(ConnectionState.FAULTED)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        """Handle disconnection callback."""
        if self._closed:
            return

        if _is_failure(reason_code):
            logger.warning(f"Unexpected disconnection ({reason_code}), will reconnect")
        else:
            logger.info("Disconnected from MQTT broker")

        # A refused CONNACK is followed by a disconnect; keep reporting the fault
        if self._state != ConnectionState.FAULTED:
            self._set_state(ConnectionState.DISCONNECTED)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None) -> None:
        failures = [rc for rc in reason_code_list if _is_failure(rc)]
        if failures:
            logger.error(f"Broker rejected subscription (mid={mid}): {failures}")

    def _on_publish(self, client, userdata, mid, reason_code=None, properties=None) -> None:
        success = reason_code is None or not _is_failure(reason_code)
        with self._lock:
            if mid not in self._pending:
                self._early_acks[mid] = success
                return
            callback = self._pending.pop(mid)

        self._record_outcome(mid, success, callback)

    def _record_outcome(
        self, mid: int, success: bool, callback: Optional[PublishCallback]
    ) -> None:
        if success:
            self._messages_published += 1
        else:
            self._messages_dropped += 1
            logger.warning(f"Broker rejected publish (mid={mid})")
        self._complete(callback, success)

    def _on_message(self, client, userdata, msg) -> None:
        """Deliver inbound messages in arrival order."""
        if self._closed:
            return

        logger.debug(f"Received message on {msg.topic}: {msg.payload!r}")
        for listener in list(self._message_listeners):
            try:
                listener(msg.topic, msg.payload)
            except Exception:
                logger.exception(f"Error processing message on {msg.topic}")
