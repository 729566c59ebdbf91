"""Unit tests for the procbridge command line."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from procbridge import __version__
from procbridge.bridge.errors import PortConflict
from procbridge.bridge.lifecycle import ServerProcessState, ServerState
from procbridge.client import ToolClientError
from procbridge.commands.tools import parse_tool_arguments
from procbridge.config import CONFIG_PATH_ENV, ENV_VARS
from procbridge.main import cli


@pytest.fixture
def runner():
    """Create CLI runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.procbridge."""
    for var in ENV_VARS.values():
        monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("PROCBRIDGE_URL", raising=False)
    path = tmp_path / "config.yaml"
    monkeypatch.setenv(CONFIG_PATH_ENV, str(path))
    return path


def mock_tool_client(**methods):
    """Patch target for ToolClient returning an async-context mock."""
    client = AsyncMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=None)
    for name, value in methods.items():
        setattr(client, name, value)
    return MagicMock(return_value=client), client


class TestRoot:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("host", "serve", "tools", "status", "config"):
            assert command in result.output


# =============================================================================
# config
# =============================================================================


class TestConfigCommands:
    def test_show_json(self, runner, monkeypatch):
        monkeypatch.setenv("PROCBRIDGE_PORT", "6111")

        result = runner.invoke(cli, ["--json", "config", "show"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["config"]["port"] == 6111
        assert data["sources"]["port"] == "environment"
        assert data["sources"]["host"] == "default"

    def test_show_text(self, runner, isolated_config):
        result = runner.invoke(cli, ["config", "show"])

        assert result.exit_code == 0
        assert "procbridge configuration" in result.output
        assert str(isolated_config) in result.output
        assert "transport" in result.output

    def test_set_and_unset(self, runner, isolated_config):
        result = runner.invoke(cli, ["config", "set", "port", "6222"])
        assert result.exit_code == 0
        assert yaml.safe_load(isolated_config.read_text()) == {"port": 6222}

        result = runner.invoke(cli, ["config", "unset", "port"])
        assert result.exit_code == 0
        assert "Unset port" in result.output

        result = runner.invoke(cli, ["config", "unset", "port"])
        assert "is not set" in result.output

    def test_set_invalid_value(self, runner, isolated_config):
        result = runner.invoke(cli, ["config", "set", "port", "nope"])

        assert result.exit_code == 1
        assert "invalid value for port" in result.output
        assert not isolated_config.exists()

    def test_set_unknown_key(self, runner):
        result = runner.invoke(cli, ["config", "set", "colour", "blue"])
        assert result.exit_code == 2


# =============================================================================
# tools / status
# =============================================================================


class TestParseToolArguments:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (None, {}),
            ('{"a": 1}', {"a": 1}),
            ('["hi", 2]', {"args": ["hi", 2]}),
            ('"text"', {"args": "text"}),
        ],
    )
    def test_mapping(self, raw, expected):
        assert parse_tool_arguments(raw) == expected


class TestToolsCommands:
    def test_call_prints_result(self, runner):
        factory, client = mock_tool_client(
            call_tool=AsyncMock(return_value={"content": [{"type": "text", "text": "hi"}]})
        )
        with patch("procbridge.commands.tools.ToolClient", factory):
            result = runner.invoke(cli, ["tools", "call", "echo", "--args", '["hi"]'])

        assert result.exit_code == 0
        assert "hi" in result.output
        client.initialize.assert_awaited_once()
        client.call_tool.assert_awaited_once_with("echo", {"args": ["hi"]})
        assert factory.call_args.args[0] == "http://127.0.0.1:5201"

    def test_call_error_result_exits_nonzero(self, runner):
        factory, _ = mock_tool_client(
            call_tool=AsyncMock(
                return_value={
                    "content": [{"type": "text", "text": "Error executing tool nope: unknown"}],
                    "isError": True,
                }
            )
        )
        with patch("procbridge.commands.tools.ToolClient", factory):
            result = runner.invoke(cli, ["tools", "call", "nope"])

        assert result.exit_code == 1

    def test_call_json_output(self, runner):
        payload = {"content": [{"type": "text", "text": "3"}]}
        factory, _ = mock_tool_client(call_tool=AsyncMock(return_value=payload))
        with patch("procbridge.commands.tools.ToolClient", factory):
            result = runner.invoke(cli, ["--json", "tools", "call", "add", "--args", "[1, 2]"])

        assert result.exit_code == 0
        assert json.loads(result.output) == payload

    def test_call_invalid_args(self, runner):
        result = runner.invoke(cli, ["tools", "call", "echo", "--args", "{oops"])
        assert result.exit_code == 2
        assert "Invalid JSON" in result.output

    def test_connection_error(self, runner):
        factory, _ = mock_tool_client(
            initialize=AsyncMock(side_effect=ToolClientError("Cannot connect to command server"))
        )
        with patch("procbridge.commands.tools.ToolClient", factory):
            result = runner.invoke(cli, ["tools", "list", "--url", "http://127.0.0.1:9"])

        assert result.exit_code == 1
        assert "Cannot connect" in result.output
        assert factory.call_args.args[0] == "http://127.0.0.1:9"

    def test_list_json(self, runner):
        tools = [{"name": "echo", "description": "Echo", "inputSchema": {}}]
        factory, _ = mock_tool_client(list_tools=AsyncMock(return_value=tools))
        with patch("procbridge.commands.tools.ToolClient", factory):
            result = runner.invoke(cli, ["--json", "tools", "list"])

        assert result.exit_code == 0
        assert json.loads(result.output) == tools

    def test_list_table(self, runner):
        tools = [{"name": "echo", "description": "Echo", "inputSchema": {}}]
        factory, _ = mock_tool_client(list_tools=AsyncMock(return_value=tools))
        with patch("procbridge.commands.tools.ToolClient", factory):
            result = runner.invoke(cli, ["tools", "list"])

        assert result.exit_code == 0
        assert "echo" in result.output

    def test_status(self, runner):
        health = {"status": "degraded", "port": 5201, "host_connected": False}
        factory, _ = mock_tool_client(health=AsyncMock(return_value=health))
        with patch("procbridge.commands.tools.ToolClient", factory):
            result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "degraded" in result.output
        assert "host_connected: False" in result.output


# =============================================================================
# host / serve
# =============================================================================


class TestHostCommand:
    def test_runs_with_overrides(self, runner):
        run_host = AsyncMock(return_value=ServerProcessState(ServerState.STOPPED))
        with (
            patch("procbridge.commands.host.run_host", run_host),
            patch("procbridge.commands.host.configure_logging"),
        ):
            result = runner.invoke(cli, ["host", "--port", "5400", "--transport", "STDIO"])

        assert result.exit_code == 0
        config, capabilities = run_host.await_args.args
        assert config.port == 5400
        assert config.transport == "stdio"
        assert config.get_source("port") == "command line"
        assert "echo" in capabilities

    def test_log_file_switches_to_json(self, runner, tmp_path):
        log_file = tmp_path / "host.log"
        run_host = AsyncMock(return_value=ServerProcessState(ServerState.STOPPED))
        with (
            patch("procbridge.commands.host.run_host", run_host),
            patch("procbridge.commands.host.configure_logging") as configure,
        ):
            result = runner.invoke(cli, ["host", "--log-file", str(log_file)])

        assert result.exit_code == 0
        configure.assert_called_once_with(
            "info", log_file=str(log_file), json_output=True, role="host"
        )

    def test_bad_capability_reference(self, runner):
        with patch("procbridge.commands.host.configure_logging"):
            result = runner.invoke(cli, ["host", "--capabilities", "nowhere"])

        assert result.exit_code == 1
        assert "module:attr" in result.output

    def test_bridge_error_exits_nonzero(self, runner):
        run_host = AsyncMock(side_effect=PortConflict(message="Port 5201 is still in use"))
        with (
            patch("procbridge.commands.host.run_host", run_host),
            patch("procbridge.commands.host.configure_logging"),
        ):
            result = runner.invoke(cli, ["host"])

        assert result.exit_code == 1
        assert "Port 5201 is still in use" in result.output

    def test_failed_child_exits_nonzero(self, runner):
        state = ServerProcessState(ServerState.FAILED, reason="exited with code 2")
        with (
            patch("procbridge.commands.host.run_host", AsyncMock(return_value=state)),
            patch("procbridge.commands.host.configure_logging"),
        ):
            result = runner.invoke(cli, ["host"])

        assert result.exit_code == 1
        assert "exited with code 2" in result.output


class TestServeCommand:
    def test_settings_from_options(self, runner, monkeypatch):
        monkeypatch.delenv("PROCBRIDGE_IPC_FD", raising=False)
        run_child = AsyncMock()
        with (
            patch("procbridge.commands.serve.run_child", run_child),
            patch("procbridge.commands.serve.configure_logging"),
        ):
            result = runner.invoke(
                cli, ["serve", "--port", "0", "--transport", "stdio", "--command-timeout", "3"]
            )

        assert result.exit_code == 0
        [settings] = run_child.await_args.args
        assert settings.port == 0
        assert settings.transport == "stdio"
        assert settings.command_timeout == 3.0
        assert settings.ipc_fd is None

    def test_settings_from_environment(self, runner, monkeypatch):
        monkeypatch.setenv("PROCBRIDGE_PORT", "5555")
        monkeypatch.setenv("PROCBRIDGE_IPC_FD", "7")
        run_child = AsyncMock()
        with (
            patch("procbridge.commands.serve.run_child", run_child),
            patch("procbridge.commands.serve.configure_logging"),
        ):
            result = runner.invoke(cli, ["serve"])

        assert result.exit_code == 0
        [settings] = run_child.await_args.args
        assert settings.port == 5555
        assert settings.ipc_fd == 7

    def test_invalid_environment(self, runner, monkeypatch):
        monkeypatch.setenv("PROCBRIDGE_IPC_FD", "seven")
        with (
            patch("procbridge.commands.serve.run_child", AsyncMock()),
            patch("procbridge.commands.serve.configure_logging"),
        ):
            result = runner.invoke(cli, ["serve"])

        assert result.exit_code == 1
        assert "Invalid environment" in result.output
