"""Command-line interface for the tank control panel."""

import logging
import sys
import time
from pathlib import Path

import click
import paho.mqtt.client as mqtt

from . import __version__
from .config import Config, Endpoint
from .connection import ConnectionManager, make_client_id
from .display import controls_enabled, mode_toggle_enabled, render_summary
from .session import ControlSession, create_session
from .topics import (
    CHANNEL_TOPICS,
    LEVEL_TOPIC,
    MODE_TOPIC,
    SUBSCRIPTION_TOPICS,
    Channel,
    ControlMode,
    UnknownMessage,
    classify_message,
    decode_payload,
)

logger = logging.getLogger(__name__)

COMMAND_HELP = """Commands:
  on <channel>        switch a channel on (power1, power2, power3, pump)
  off <channel>       switch a channel off
  mode <manual|automatic>
  status              print the current state
  quit                close the session"""


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_config(config_path: Path, url=None) -> Config:
    config = Config.from_yaml(config_path)
    config = Config.from_env(env_file=Path(".env"), base=config)
    if url:
        config.mqtt.url = url
        config.mqtt.validate()
    return config


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=Path("config/config.yaml"),
    help="Path to config.yaml",
)
@click.option("--url", "-u", default=None, help="Broker URL, e.g. ws://localhost:9001/")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging")
@click.pass_context
def main(ctx, config_path, url, verbose):
    """Tank Control Panel - observe a tank and drive its pump and power outputs over MQTT.

    Channels (power1, power2, power3, pump) can only be switched by the
    operator in manual mode. In automatic mode an external controller owns
    them and the panel just follows the reported state.
    """
    _setup_logging(verbose)
    try:
        ctx.obj = _load_config(config_path, url)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def handle_command(session: ControlSession, line: str) -> bool:
    """Run one operator command. Returns False when the session should end."""
    parts = line.strip().lower().split()
    if not parts:
        return True

    command, args = parts[0], parts[1:]

    if command in ("quit", "exit"):
        return False

    if command == "status":
        click.echo(render_summary(session.snapshot()))
    elif command in ("on", "off") and len(args) == 1:
        try:
            channel = Channel(args[0])
        except ValueError:
            click.echo(f"Unknown channel: {args[0]}")
            return True
        if not session.set_channel(channel, command == "on"):
            click.echo("Manual controls are disabled in automatic mode")
    elif command == "mode" and len(args) == 1:
        try:
            session.set_mode(ControlMode(args[0]))
        except ValueError:
            click.echo(f"Unknown mode: {args[0]}")
    else:
        click.echo(COMMAND_HELP)

    return True


@main.command()
@click.pass_obj
def run(config: Config):
    """Start an interactive control session.

    Connects in the background, prints the dashboard on every change and
    reads operator commands from stdin.
    """
    session = create_session(config)

    def on_change(snapshot):
        click.echo(render_summary(snapshot))
        if not controls_enabled(
            snapshot, allow_offline=config.session.channels_enabled_while_disconnected
        ):
            click.echo("  (channel controls inactive)")
        if not mode_toggle_enabled(snapshot):
            click.echo("  (mode toggle inactive while disconnected)")
        click.echo()

    session.add_listener(on_change)
    session.start()

    click.echo(f"Tank Control Panel - broker {config.mqtt.url}")
    click.echo(COMMAND_HELP)
    click.echo()

    stdin = click.get_text_stream("stdin")
    try:
        for line in stdin:
            if not handle_command(session, line):
                break
    except KeyboardInterrupt:
        click.echo("\nInterrupted")
    finally:
        session.close()


def _one_shot_publish(config: Config, topic: str, payload: str) -> None:
    endpoint = config.mqtt.endpoint
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=make_client_id(config.mqtt.client_id_prefix),
        transport=endpoint.transport,
    )
    if config.mqtt.username:
        client.username_pw_set(config.mqtt.username, config.mqtt.password)
    if endpoint.transport == "websockets":
        client.ws_set_options(path=endpoint.path)
    if endpoint.tls:
        client.tls_set()

    client.connect(endpoint.host, endpoint.port)
    client.loop_start()
    try:
        result = client.publish(topic, payload, qos=1)
        result.wait_for_publish(timeout=config.mqtt.connect_timeout)
    finally:
        client.disconnect()
        client.loop_stop()


@main.command(name="set-channel")
@click.argument("channel", type=click.Choice([c.value for c in Channel]))
@click.argument("state", type=click.Choice(["on", "off"]))
@click.pass_obj
def set_channel(config: Config, channel, state):
    """Publish a single on/off command for CHANNEL."""
    topic = CHANNEL_TOPICS[Channel(channel)]
    try:
        _one_shot_publish(config, topic, state)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Set {channel} {state}")
    click.echo(f"  Topic: {topic}")


@main.command(name="set-mode")
@click.argument("mode", type=click.Choice([m.value for m in ControlMode]))
@click.pass_obj
def set_mode(config: Config, mode):
    """Publish a control mode change."""
    try:
        _one_shot_publish(config, MODE_TOPIC, mode)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Set mode to {mode}")
    click.echo(f"  Topic: {MODE_TOPIC}")


@main.command()
@click.pass_obj
def monitor(config: Config):
    """Print every message on the tank topics until Ctrl+C."""
    connection = ConnectionManager(config.mqtt)

    def on_message(topic, payload):
        message = classify_message(topic, payload)
        marker = " (ignored)" if isinstance(message, UnknownMessage) else ""
        click.echo(f"{topic}: {decode_payload(payload)}{marker}")

    def on_state(state):
        click.echo(f"-- {state.value}")

    connection.add_message_listener(on_message)
    connection.add_state_listener(on_state)
    connection.connect()

    click.echo("Press Ctrl+C to stop")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nDisconnected")
    finally:
        connection.close()


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
def init(output):
    """Generate a sample configuration file."""
    output.mkdir(parents=True, exist_ok=True)

    cfg = Config.default()
    config_path = output / "config.yaml"
    cfg.to_yaml(config_path)

    click.echo(f"Created: {config_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - MQTT broker URL and client id prefix")
    click.echo("  - Reconnect backoff and connect timeout")
    click.echo("  - Initial control mode")
    click.echo()
    click.echo(f"Run with: tank-panel --config {config_path} run")


@main.command()
@click.pass_obj
def status(config: Config):
    """Show the topic table and effective configuration."""
    endpoint: Endpoint = config.mqtt.endpoint

    click.echo("Tank Control Panel")
    click.echo("=" * 40)
    click.echo()
    click.echo(f"Broker:        {endpoint.url} ({endpoint.transport})")
    click.echo(f"Client prefix: {config.mqtt.client_id_prefix}")
    click.echo(f"Timeout:       {config.mqtt.connect_timeout}s")
    click.echo(
        f"Reconnect:     {config.mqtt.reconnect_min_delay}-{config.mqtt.reconnect_max_delay}s"
    )
    click.echo(f"Initial mode:  {config.session.initial_mode.value}")
    click.echo()
    click.echo("Topics:")
    click.echo(f"  {LEVEL_TOPIC:<8} inbound   tank level % (0-100)")
    for channel, topic in CHANNEL_TOPICS.items():
        click.echo(f"  {topic:<8} in/out    {channel.value} on|off")
    click.echo(f"  {MODE_TOPIC:<8} in/out    manual|automatic")
    click.echo()
    click.echo(f"Subscribed on connect: {' '.join(SUBSCRIPTION_TOPICS)}")


if __name__ == "__main__":
    main()
