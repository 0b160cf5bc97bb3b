"""Tests for the command-line interface."""

import pytest
from unittest.mock import patch

from click.testing import CliRunner

from tank_control_panel.cli import handle_command, main
from tank_control_panel.connection import ConnectionState
from tank_control_panel.session import ControlSession
from tank_control_panel.topics import ControlMode


@pytest.fixture
def runner(clean_env):
    return CliRunner()


class TestHandleCommand:
    """Tests for interactive operator commands."""

    @pytest.fixture
    def connection(self, connected_fake):
        return connected_fake

    @pytest.fixture
    def session(self, connection):
        return ControlSession(connection)

    def test_switch_channel(self, session, connection):
        assert handle_command(session, "on pump") is True
        assert handle_command(session, "OFF power1") is True

        assert session.devices.pump is True
        assert connection.published == [("/pump", "on"), ("/power1", "off")]

    def test_mode(self, session, connection):
        handle_command(session, "mode automatic")

        assert session.mode == ControlMode.AUTOMATIC
        assert connection.published == [("/mode", "automatic")]

    def test_rejected_in_automatic_mode(self, session, connection, capsys):
        handle_command(session, "mode automatic")
        handle_command(session, "on pump")

        assert session.devices.pump is False
        assert "disabled in automatic mode" in capsys.readouterr().out

    def test_unknown_channel(self, session, connection, capsys):
        handle_command(session, "on heater")

        assert connection.published == []
        assert "Unknown channel" in capsys.readouterr().out

    def test_unknown_mode(self, session, capsys):
        handle_command(session, "mode turbo")

        assert session.mode == ControlMode.MANUAL
        assert "Unknown mode" in capsys.readouterr().out

    def test_status(self, session, connection, capsys):
        connection.deliver("/level", "12")
        handle_command(session, "status")

        assert "Tank level: 12.0% (Low)" in capsys.readouterr().out

    def test_quit_and_blank_lines(self, session):
        assert handle_command(session, "") is True
        assert handle_command(session, "quit") is False
        assert handle_command(session, "exit") is False

    def test_help_on_garbage(self, session, capsys):
        handle_command(session, "jump")

        assert "Commands:" in capsys.readouterr().out


class TestCommands:
    """Tests for click commands."""

    def test_init_writes_config(self, runner):
        with runner.isolated_filesystem():
            result = runner.invoke(main, ["init", "--output", "out"])

            assert result.exit_code == 0
            assert "Created: out/config.yaml" in result.output
            with open("out/config.yaml") as f:
                assert "ws://localhost:9001/" in f.read()

    def test_status_lists_topics(self, runner):
        with runner.isolated_filesystem():
            result = runner.invoke(main, ["--url", "mqtt://plant:1883", "status"])

        assert result.exit_code == 0
        assert "mqtt://plant:1883 (tcp)" in result.output
        for topic in ["/level", "/power1", "/power2", "/power3", "/pump", "/mode"]:
            assert topic in result.output

    def test_invalid_url_exits(self, runner):
        with runner.isolated_filesystem():
            result = runner.invoke(main, ["--url", "gopher://x", "status"])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_set_channel(self, runner):
        with runner.isolated_filesystem(), patch(
            "tank_control_panel.cli._one_shot_publish"
        ) as publish:
            result = runner.invoke(main, ["set-channel", "pump", "on"])

        assert result.exit_code == 0
        config, topic, payload = publish.call_args.args
        assert (topic, payload) == ("/pump", "on")
        assert "Set pump on" in result.output

    def test_set_channel_rejects_unknown_channel(self, runner):
        with runner.isolated_filesystem():
            result = runner.invoke(main, ["set-channel", "heater", "on"])

        assert result.exit_code != 0

    def test_set_mode_error(self, runner):
        with runner.isolated_filesystem(), patch(
            "tank_control_panel.cli._one_shot_publish",
            side_effect=ConnectionRefusedError("refused"),
        ):
            result = runner.invoke(main, ["set-mode", "automatic"])

        assert result.exit_code == 1
        assert "refused" in result.output

    def test_run_session(self, runner, fake_connection):
        connection = fake_connection
        session = ControlSession(connection)

        def start_connected(endpoint=None):
            connection.set_state(ConnectionState.CONNECTED)
            return True

        connection.connect = start_connected

        with runner.isolated_filesystem(), patch(
            "tank_control_panel.cli.create_session", return_value=session
        ):
            result = runner.invoke(
                main, ["run"], input="on pump\nmode automatic\noff pump\nquit\n"
            )

        assert result.exit_code == 0
        assert session.devices.pump is True
        assert session.mode == ControlMode.AUTOMATIC
        assert connection.published == [("/pump", "on"), ("/mode", "automatic")]
        assert connection.closed is True
        assert "Water Pump  Running" in result.output
        assert "(channel controls inactive)" in result.output
        assert result.output.count("(mode toggle inactive while disconnected)") == 1
