"""Tank Control Panel - MQTT tank monitoring with manual/automatic actuator control."""

__version__ = "0.1.0"

from .config import Config
from .connection import ConnectionManager, ConnectionState
from .session import ControlSession, DeviceState, SessionSnapshot
from .topics import Channel, ControlMode

__all__ = [
    "Channel",
    "Config",
    "ConnectionManager",
    "ConnectionState",
    "ControlMode",
    "ControlSession",
    "DeviceState",
    "SessionSnapshot",
    "__version__",
]
