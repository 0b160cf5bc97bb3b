"""Shared fixtures for the tank control panel tests."""

import pytest

from tank_control_panel.connection import ConnectionState

ENV_VARS = [
    "MQTT_URL",
    "MQTT_CLIENT_ID_PREFIX",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "MQTT_CONNECT_TIMEOUT",
    "TANK_INITIAL_MODE",
]


class FakeConnection:
    """In-memory stand-in for ConnectionManager that records publishes."""

    def __init__(self, state=ConnectionState.DISCONNECTED):
        self.state = state
        self.published = []
        self.connect_calls = []
        self.closed = False
        self.publish_succeeds = True
        self._state_listeners = []
        self._message_listeners = []

    @property
    def connected(self):
        return self.state == ConnectionState.CONNECTED

    def add_state_listener(self, listener):
        self._state_listeners.append(listener)

    def add_message_listener(self, listener):
        self._message_listeners.append(listener)

    def connect(self, endpoint=None):
        self.connect_calls.append(endpoint)
        self.set_state(ConnectionState.CONNECTING)
        return True

    def close(self):
        self.closed = True
        self.set_state(ConnectionState.DISCONNECTED)

    def publish(self, topic, payload, on_complete=None):
        self.published.append((topic, payload))
        ok = self.connected and self.publish_succeeds and not self.closed
        if on_complete:
            on_complete(ok)
        return ok

    def set_state(self, state):
        if state == self.state:
            return
        self.state = state
        for listener in list(self._state_listeners):
            listener(state)

    def deliver(self, topic, payload):
        if isinstance(payload, str):
            payload = payload.encode()
        for listener in list(self._message_listeners):
            listener(topic, payload)


@pytest.fixture
def fake_connection():
    return FakeConnection()


@pytest.fixture
def connected_fake():
    return FakeConnection(state=ConnectionState.CONNECTED)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove configuration variables for the duration of a test."""
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch
