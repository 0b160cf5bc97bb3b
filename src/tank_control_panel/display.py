"""Operator-facing labels derived from a session snapshot."""

from typing import List

from .connection import ConnectionState
from .session import SessionSnapshot
from .topics import Channel, ControlMode

LOW_LEVEL_THRESHOLD = 20.0
MEDIUM_LEVEL_THRESHOLD = 50.0

CHANNEL_LABELS = {
    Channel.POWER1: "Power 1",
    Channel.POWER2: "Power 2",
    Channel.POWER3: "Power 3",
    Channel.PUMP: "Water Pump",
}


def level_status(level: float) -> str:
    if level < LOW_LEVEL_THRESHOLD:
        return "Low"
    if level < MEDIUM_LEVEL_THRESHOLD:
        return "Medium"
    return "High"


def level_color(level: float) -> str:
    if level < LOW_LEVEL_THRESHOLD:
        return "red"
    if level < MEDIUM_LEVEL_THRESHOLD:
        return "yellow"
    return "blue"


def channel_label(channel: Channel) -> str:
    return CHANNEL_LABELS[channel]


def pump_label(on: bool) -> str:
    return "Running" if on else "Stopped"


def mode_label(mode: ControlMode) -> str:
    return "AUTO" if mode == ControlMode.AUTOMATIC else "MANUAL"


def connection_label(state: ConnectionState) -> str:
    return {
        ConnectionState.CONNECTED: "Connected",
        ConnectionState.CONNECTING: "Connecting",
        ConnectionState.DISCONNECTED: "Disconnected",
        ConnectionState.FAULTED: "Faulted",
    }[state]


def controls_enabled(snapshot: SessionSnapshot, allow_offline: bool = False) -> bool:
    """Whether channel switches should accept input."""
    if snapshot.automatic:
        return False
    return snapshot.connected or allow_offline


def mode_toggle_enabled(snapshot: SessionSnapshot) -> bool:
    return snapshot.connected


def render_summary(snapshot: SessionSnapshot) -> str:
    """Plain-text dashboard for terminals and logs."""
    devices = snapshot.devices
    level = devices.tank_level
    lines: List[str] = [
        f"MQTT {connection_label(snapshot.connection)} | Mode: {mode_label(snapshot.mode)}",
        f"Tank level: {level:.1f}% ({level_status(level)})",
    ]

    for channel in Channel:
        on = devices.is_on(channel)
        if channel == Channel.PUMP:
            state = pump_label(on)
        else:
            state = "ON" if on else "OFF"
        suffix = " [Auto]" if snapshot.automatic else ""
        lines.append(f"  {channel_label(channel):<11} {state}{suffix}")

    lines.append(f"Active systems: {devices.active_count}")
    return "\n".join(lines)
