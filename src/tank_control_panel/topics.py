"""Topic table and payload parsing for the tank control panel.

Wire contract (all payloads are plain UTF-8 text):

  /level                              inbound   decimal number, tank level %
  /power1 /power2 /power3 /pump       in + out  "on" / "off"
  /mode                               in + out  "manual" / "automatic"

Every inbound message is turned into exactly one of the report types below
by ``classify_message``. Parsers return ``None`` for payloads that must be
ignored instead of raising.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union

LEVEL_MIN = 0.0
LEVEL_MAX = 100.0

_DECIMAL_RE = re.compile(r"[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?")


class Channel(str, Enum):
    """Controllable actuators."""

    POWER1 = "power1"
    POWER2 = "power2"
    POWER3 = "power3"
    PUMP = "pump"

    @property
    def topic(self) -> str:
        return CHANNEL_TOPICS[self]


class ControlMode(str, Enum):
    """Who is allowed to command the channels."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"


LEVEL_TOPIC = "/level"
MODE_TOPIC = "/mode"

CHANNEL_TOPICS: Dict[Channel, str] = {
    Channel.POWER1: "/power1",
    Channel.POWER2: "/power2",
    Channel.POWER3: "/power3",
    Channel.PUMP: "/pump",
}
TOPIC_CHANNELS: Dict[str, Channel] = {t: c for c, t in CHANNEL_TOPICS.items()}

# Subscribed on every (re)connect
SUBSCRIPTION_TOPICS: List[str] = [LEVEL_TOPIC, *CHANNEL_TOPICS.values(), MODE_TOPIC]


@dataclass(frozen=True)
class LevelReport:
    """Tank level reported on /level, already clamped."""

    level: float


@dataclass(frozen=True)
class ChannelReport:
    """Authoritative on/off report for one channel."""

    channel: Channel
    on: bool


@dataclass(frozen=True)
class ModeReport:
    """Control mode announced on /mode."""

    mode: ControlMode


@dataclass(frozen=True)
class UnknownMessage:
    """Message on an unrecognized topic, or with an unusable payload."""

    topic: str
    payload: str


InboundMessage = Union[LevelReport, ChannelReport, ModeReport, UnknownMessage]


def decode_payload(payload: Union[bytes, bytearray, str]) -> str:
    """Decode a raw MQTT payload as UTF-8 text."""
    if isinstance(payload, str):
        return payload
    return bytes(payload).decode("utf-8", errors="replace")


def clamp_level(value: float) -> float:
    return max(LEVEL_MIN, min(LEVEL_MAX, value))


def parse_level(text: str) -> Optional[float]:
    """Parse a level payload, returning the clamped percentage.

    Only plain ASCII decimal notation is accepted (``57.3``, ``-5``, ``1e3``).
    Values too large for a float still clamp to the nearest bound.
    Returns None for anything else.
    """
    text = text.strip()
    if not _DECIMAL_RE.fullmatch(text):
        return None
    return clamp_level(float(text))


def parse_switch(text: str) -> bool:
    """Channel payloads: "on" in any case is on, everything else is off."""
    return text.lower() == "on"


def parse_mode(text: str) -> Optional[ControlMode]:
    try:
        return ControlMode(text.strip().lower())
    except ValueError:
        return None


def format_switch(on: bool) -> str:
    return "on" if on else "off"


def classify_message(topic: str, payload: Union[bytes, bytearray, str]) -> InboundMessage:
    """Map a raw (topic, payload) pair to a typed report by exact topic match."""
    text = decode_payload(payload)

    if topic == LEVEL_TOPIC:
        level = parse_level(text)
        if level is None:
            return UnknownMessage(topic, text)
        return LevelReport(level)

    channel = TOPIC_CHANNELS.get(topic)
    if channel is not None:
        return ChannelReport(channel, parse_switch(text))

    if topic == MODE_TOPIC:
        mode = parse_mode(text)
        if mode is None:
            return UnknownMessage(topic, text)
        return ModeReport(mode)

    return UnknownMessage(topic, text)
