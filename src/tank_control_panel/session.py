"""Control session: canonical device state and mode-based write authority.

Operator writes are applied optimistically and published; inbound channel
reports always overwrite local state, whatever the mode. In automatic mode
channel writes from the operator are rejected here, not just in the UI.

Inbound /mode reports follow the same last-write-wins-by-arrival rule as
channels, so an external agent reasserting a mode wins over an earlier local
toggle and vice versa. The one exception is the broker echoing back a mode
this session published and has since replaced with a newer toggle.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Union

from .connection import ConnectionManager, ConnectionState
from .topics import (
    MODE_TOPIC,
    Channel,
    ChannelReport,
    ControlMode,
    LevelReport,
    ModeReport,
    clamp_level,
    classify_message,
    format_switch,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceState:
    """On/off state of every channel plus the tank level (0-100 %)."""

    power1: bool = False
    power2: bool = False
    power3: bool = False
    pump: bool = False
    tank_level: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "tank_level", clamp_level(float(self.tank_level)))

    def is_on(self, channel: Channel) -> bool:
        return getattr(self, channel.value)

    def with_channel(self, channel: Channel, on: bool) -> "DeviceState":
        return replace(self, **{channel.value: on})

    def with_level(self, level: float) -> "DeviceState":
        return replace(self, tank_level=level)

    @property
    def channels(self) -> Dict[Channel, bool]:
        return {channel: self.is_on(channel) for channel in Channel}

    @property
    def active_count(self) -> int:
        return sum(1 for on in self.channels.values() if on)


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view handed to the presentation layer."""

    connection: ConnectionState
    mode: ControlMode
    devices: DeviceState

    @property
    def connected(self) -> bool:
        return self.connection == ConnectionState.CONNECTED

    @property
    def automatic(self) -> bool:
        return self.mode == ControlMode.AUTOMATIC


SnapshotListener = Callable[[SessionSnapshot], None]


class ControlSession:
    """Owns DeviceState and ControlMode on top of a ConnectionManager."""

    def __init__(
        self,
        connection: ConnectionManager,
        initial_mode: ControlMode = ControlMode.MANUAL,
    ):
        self._connection = connection
        self._mode = ControlMode(initial_mode)
        self._devices = DeviceState()
        self._closed = False
        self._lock = threading.RLock()
        self._listeners: List[SnapshotListener] = []
        # Modes published by this session whose /mode echo has not arrived yet
        self._mode_echoes: List[ControlMode] = []

        connection.add_message_listener(self.on_inbound_message)
        connection.add_state_listener(self._on_connection_state)

    @property
    def mode(self) -> ControlMode:
        return self._mode

    @property
    def devices(self) -> DeviceState:
        return self._devices

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                connection=self._connection.state,
                mode=self._mode,
                devices=self._devices,
            )

    def add_listener(self, listener: SnapshotListener) -> None:
        """Register a callback receiving a fresh snapshot after every change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self, endpoint=None) -> bool:
        """Begin connecting; returns immediately."""
        if self._closed:
            return False
        return self._connection.connect(endpoint)

    def close(self) -> None:
        """Tear down the session and its broker link."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._connection.close()
        logger.info("Control session closed")

    def set_channel(self, channel: Union[Channel, str], desired_on: bool) -> bool:
        """Operator request to switch a channel.

        Applied only in manual mode: local state changes first, then the new
        value is published. Returns False when the request was rejected.
        """
        channel = Channel(channel)

        with self._lock:
            if self._closed:
                logger.warning(f"Session closed - ignoring {channel.value} request")
                return False
            if self._mode == ControlMode.AUTOMATIC:
                logger.info(f"Automatic mode - ignoring manual {channel.value} request")
                return False

            self._devices = self._devices.with_channel(channel, bool(desired_on))
            self._notify()

        payload = format_switch(bool(desired_on))
        self._connection.publish(
            channel.topic, payload, on_complete=self._publish_logger(channel.topic, payload)
        )
        return True

    def set_mode(self, mode: Union[ControlMode, str]) -> bool:
        """Switch control mode locally and announce it on /mode.

        Always allowed. The local mode is not rolled back if the publish fails.
        """
        mode = ControlMode(mode)

        with self._lock:
            if self._closed:
                logger.warning("Session closed - ignoring mode change")
                return False
            if mode != self._mode:
                logger.info(f"Control mode changed: {self._mode.value} -> {mode.value}")
                self._mode = mode
                self._notify()
            self._mode_echoes.append(mode)

        log_outcome = self._publish_logger(MODE_TOPIC, mode.value)

        def on_complete(success: bool) -> None:
            if not success:
                self._forget_mode_echo(mode)
            log_outcome(success)

        self._connection.publish(MODE_TOPIC, mode.value, on_complete=on_complete)
        return True

    def set_automatic(self, enabled: bool) -> bool:
        return self.set_mode(ControlMode.AUTOMATIC if enabled else ControlMode.MANUAL)

    def on_inbound_message(self, topic: str, payload: Union[bytes, str]) -> None:
        """Apply one broker message to the canonical state."""
        message = classify_message(topic, payload)

        with self._lock:
            if self._closed:
                return

            if isinstance(message, LevelReport):
                devices = self._devices.with_level(message.level)
                changed = devices != self._devices
                self._devices = devices

            elif isinstance(message, ChannelReport):
                devices = self._devices.with_channel(message.channel, message.on)
                changed = devices != self._devices
                self._devices = devices
                logger.debug(
                    f"Updated {message.channel.value} to {format_switch(message.on)} from incoming message"
                )

            elif isinstance(message, ModeReport):
                if self._is_stale_mode_echo(message.mode):
                    logger.debug(f"Ignoring echo of superseded mode {message.mode.value}")
                    return
                changed = message.mode != self._mode
                if changed:
                    logger.info(
                        f"Control mode reported by broker: {self._mode.value} -> {message.mode.value}"
                    )
                self._mode = message.mode

            else:
                logger.debug(f"Ignoring message on {message.topic}: {message.payload!r}")
                changed = False

            if changed:
                self._notify()

    def _is_stale_mode_echo(self, mode: ControlMode) -> bool:
        """Consume a pending echo of ``mode``.

        True when it was our own publish and a newer local toggle is still
        waiting for its echo, so applying it would undo that toggle.
        """
        if mode not in self._mode_echoes:
            return False
        del self._mode_echoes[: self._mode_echoes.index(mode) + 1]
        return bool(self._mode_echoes)

    def _forget_mode_echo(self, mode: ControlMode) -> None:
        with self._lock:
            for i in range(len(self._mode_echoes) - 1, -1, -1):
                if self._mode_echoes[i] == mode:
                    del self._mode_echoes[i]
                    break

    def _on_connection_state(self, state: ConnectionState) -> None:
        with self._lock:
            if state != ConnectionState.CONNECTED:
                # Echoes in flight are lost with the link
                self._mode_echoes.clear()
            if self._closed and state != ConnectionState.DISCONNECTED:
                return
            self._notify()

    def _notify(self) -> None:
        snapshot = SessionSnapshot(
            connection=self._connection.state,
            mode=self._mode,
            devices=self._devices,
        )
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Session listener failed")

    @staticmethod
    def _publish_logger(topic: str, payload: str) -> Callable[[bool], None]:
        def on_complete(success: bool) -> None:
            if success:
                logger.info(f"Published {payload} to {topic}")
            else:
                logger.warning(f"Failed to publish {payload} to {topic}")

        return on_complete


def create_session(config, connection: Optional[ConnectionManager] = None) -> ControlSession:
    """Build a session (and its connection manager) from a Config."""
    if connection is None:
        connection = ConnectionManager(config.mqtt)
    return ControlSession(connection, initial_mode=config.session.initial_mode)
