"""Configuration management for the tank control panel."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit

import yaml
from dotenv import load_dotenv

from .topics import ControlMode

# scheme -> (transport, tls, default port)
_SCHEMES: Dict[str, Tuple[str, bool, int]] = {
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
    "mqtt": ("tcp", False, 1883),
    "tcp": ("tcp", False, 1883),
    "mqtts": ("tcp", True, 8883),
}


@dataclass(frozen=True)
class Endpoint:
    """Broker endpoint parsed from a URL."""

    host: str
    port: int
    transport: str = "tcp"
    tls: bool = False
    path: str = "/"

    @classmethod
    def from_url(cls, url: str) -> "Endpoint":
        """Parse ``ws://host:port/path`` style broker URLs."""
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme not in _SCHEMES:
            raise ValueError(f"Unsupported broker URL scheme: {url!r}")
        if not parts.hostname:
            raise ValueError(f"Broker URL has no host: {url!r}")

        transport, tls, default_port = _SCHEMES[scheme]
        return cls(
            host=parts.hostname,
            port=parts.port or default_port,
            transport=transport,
            tls=tls,
            path=parts.path or "/",
        )

    @property
    def url(self) -> str:
        scheme = {
            ("websockets", False): "ws",
            ("websockets", True): "wss",
            ("tcp", False): "mqtt",
            ("tcp", True): "mqtts",
        }[(self.transport, self.tls)]
        path = self.path if self.transport == "websockets" else ""
        return f"{scheme}://{self.host}:{self.port}{path}"


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""

    url: str = "ws://localhost:9001/"
    client_id_prefix: str = "tank-control-panel"
    username: str = ""
    password: str = ""
    clean_session: bool = True
    keepalive: int = 60
    connect_timeout: float = 4.0
    reconnect_min_delay: int = 1
    reconnect_max_delay: int = 30
    qos: int = 0

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint.from_url(self.url)

    def validate(self) -> None:
        Endpoint.from_url(self.url)
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.reconnect_min_delay < 1:
            raise ValueError("reconnect_min_delay must be at least 1 second")
        if self.reconnect_min_delay > self.reconnect_max_delay:
            raise ValueError("reconnect_min_delay must not exceed reconnect_max_delay")
        if self.qos not in (0, 1, 2):
            raise ValueError(f"Invalid QoS: {self.qos}")


@dataclass
class SessionConfig:
    """Control session defaults."""

    initial_mode: ControlMode = ControlMode.MANUAL
    # Presentation hint only; the session accepts manual writes while offline
    channels_enabled_while_disconnected: bool = False


@dataclass
class Config:
    """Main configuration container."""

    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def default(cls) -> "Config":
        return cls()

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            return cls.default()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None, base: Optional["Config"] = None) -> "Config":
        """Load configuration from environment variables (and a .env file if present)."""
        if env_file is not None and env_file.exists():
            load_dotenv(env_file)

        config = base or cls.default()

        config.mqtt.url = os.getenv("MQTT_URL", config.mqtt.url)
        config.mqtt.client_id_prefix = os.getenv(
            "MQTT_CLIENT_ID_PREFIX", config.mqtt.client_id_prefix
        )
        config.mqtt.username = os.getenv("MQTT_USERNAME", config.mqtt.username)
        config.mqtt.password = os.getenv("MQTT_PASSWORD", config.mqtt.password)
        config.mqtt.connect_timeout = float(
            os.getenv("MQTT_CONNECT_TIMEOUT", config.mqtt.connect_timeout)
        )

        mode = os.getenv("TANK_INITIAL_MODE")
        if mode:
            config.session.initial_mode = _parse_mode_setting(mode)

        config.mqtt.validate()
        return config

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        config = cls.default()

        if "mqtt" in data:
            mqtt_data = data["mqtt"] or {}
            defaults = config.mqtt
            config.mqtt = MQTTConfig(
                url=mqtt_data.get("url", defaults.url),
                client_id_prefix=mqtt_data.get("client_id_prefix", defaults.client_id_prefix),
                username=mqtt_data.get("username", defaults.username),
                password=mqtt_data.get("password", defaults.password),
                clean_session=mqtt_data.get("clean_session", defaults.clean_session),
                keepalive=int(mqtt_data.get("keepalive", defaults.keepalive)),
                connect_timeout=float(
                    mqtt_data.get("connect_timeout", defaults.connect_timeout)
                ),
                reconnect_min_delay=int(
                    mqtt_data.get("reconnect_min_delay", defaults.reconnect_min_delay)
                ),
                reconnect_max_delay=int(
                    mqtt_data.get("reconnect_max_delay", defaults.reconnect_max_delay)
                ),
                qos=int(mqtt_data.get("qos", defaults.qos)),
            )

        if "session" in data:
            session_data = data["session"] or {}
            config.session = SessionConfig(
                initial_mode=_parse_mode_setting(
                    session_data.get("initial_mode", config.session.initial_mode.value)
                ),
                channels_enabled_while_disconnected=bool(
                    session_data.get(
                        "channels_enabled_while_disconnected",
                        config.session.channels_enabled_while_disconnected,
                    )
                ),
            )

        config.mqtt.validate()
        return config

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        data = {
            "mqtt": {
                "url": self.mqtt.url,
                "client_id_prefix": self.mqtt.client_id_prefix,
                "username": self.mqtt.username,
                "password": self.mqtt.password,
                "clean_session": self.mqtt.clean_session,
                "keepalive": self.mqtt.keepalive,
                "connect_timeout": self.mqtt.connect_timeout,
                "reconnect_min_delay": self.mqtt.reconnect_min_delay,
                "reconnect_max_delay": self.mqtt.reconnect_max_delay,
                "qos": self.mqtt.qos,
            },
            "session": {
                "initial_mode": self.session.initial_mode.value,
                "channels_enabled_while_disconnected": (
                    self.session.channels_enabled_while_disconnected
                ),
            },
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def _parse_mode_setting(value: str) -> ControlMode:
    try:
        return ControlMode(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Invalid control mode: {value!r}") from None
