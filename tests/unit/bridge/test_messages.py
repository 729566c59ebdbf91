"""Unit tests for the host/child wire protocol."""

import json

import pytest

from procbridge.bridge.errors import MalformedMessage
from procbridge.bridge.messages import (
    AbsentArgs,
    CapabilityInfo,
    CapabilityList,
    CommandError,
    CommandOutput,
    CommandResult,
    DiscoverCapabilities,
    ExecuteCommand,
    ObjectArgs,
    Ready,
    ScalarArgs,
    SequenceArgs,
    Unparseable,
    as_argument,
    decode_message,
    is_terminal,
    parse_message,
    serialize_message,
)

pytestmark = [pytest.mark.bridge, pytest.mark.bridge_unit]


class TestWireFormat:
    """Messages serialize to one line of tagged JSON."""

    def test_discover_capabilities_is_type_only(self):
        assert json.loads(serialize_message(DiscoverCapabilities())) == {"type": "get_commands"}

    def test_execute_command_uses_camel_case_request_id(self):
        message = ExecuteCommand(request_id="1-abcd", command="echo", args=SequenceArgs(["hi"]))
        data = json.loads(serialize_message(message))

        assert data == {
            "type": "execute_command",
            "requestId": "1-abcd",
            "command": "echo",
            "args": ["hi"],
        }

    def test_absent_args_are_omitted(self):
        data = json.loads(serialize_message(ExecuteCommand(request_id="r", command="ping")))
        assert "args" not in data

    def test_capability_list_wire_shape(self):
        message = CapabilityList(capabilities=[CapabilityInfo("echo", "Echo back")])
        data = json.loads(serialize_message(message))

        assert data == {
            "type": "commands_list",
            "commands": [{"name": "echo", "description": "Echo back"}],
        }

    def test_serialized_message_is_a_single_line(self):
        line = serialize_message(CommandOutput(request_id="r", chunk="a\nb\nc"))
        assert "\n" not in line

    def test_non_json_value_raises(self):
        with pytest.raises(TypeError):
            serialize_message(CommandResult(request_id="r", value=object()))

    def test_nan_is_rejected(self):
        with pytest.raises(ValueError):
            serialize_message(CommandResult(request_id="r", value=float("nan")))


class TestRoundTrip:
    """decode(serialize(m)) == m for every message kind."""

    @pytest.mark.parametrize(
        "message",
        [
            DiscoverCapabilities(),
            CapabilityList(capabilities=[CapabilityInfo("a", "first"), CapabilityInfo("b")]),
            ExecuteCommand(request_id="1", command="c", args=SequenceArgs([1, "two", None])),
            ExecuteCommand(request_id="2", command="c", args=ObjectArgs({"k": [1, 2]})),
            ExecuteCommand(request_id="3", command="c", args=ScalarArgs(4.5)),
            ExecuteCommand(request_id="4", command="c", args=AbsentArgs()),
            CommandOutput(request_id="5", chunk="partial"),
            CommandResult(request_id="6", value={"nested": [1, {"x": None}]}),
            CommandResult(request_id="7", value=None),
            CommandError(request_id="8", message="nope"),
            Ready(port=5201),
            Ready(),
        ],
    )
    def test_round_trip(self, message):
        assert decode_message(serialize_message(message)) == message

    def test_bytes_input(self):
        message = CommandOutput(request_id="r", chunk="héllo")
        assert decode_message(serialize_message(message).encode("utf-8")) == message


class TestArguments:
    """Argument variants."""

    def test_as_argument_picks_variant(self):
        assert as_argument(None) == AbsentArgs()
        assert as_argument([1, 2]) == SequenceArgs([1, 2])
        assert as_argument((1, 2)) == SequenceArgs([1, 2])
        assert as_argument({"a": 1}) == ObjectArgs({"a": 1})
        assert as_argument("x") == ScalarArgs("x")
        assert as_argument(False) == ScalarArgs(False)

    def test_as_argument_passes_variants_through(self):
        args = ObjectArgs({"a": 1})
        assert as_argument(args) is args

    def test_null_args_decode_as_absent(self):
        message = decode_message('{"type":"execute_command","requestId":"r","command":"c","args":null}')
        assert message.args == AbsentArgs()

    @pytest.mark.parametrize("value", [None, [1], (1,), {"a": 1}])
    def test_scalar_rejects_non_scalars(self, value):
        with pytest.raises(TypeError):
            ScalarArgs(value)


class TestCapabilityList:
    def test_duplicate_names_rejected_on_construction(self):
        with pytest.raises(ValueError, match="echo"):
            CapabilityList(capabilities=[CapabilityInfo("echo"), CapabilityInfo("echo", "again")])

    def test_every_constructible_list_decodes(self):
        message = CapabilityList(capabilities=[CapabilityInfo("add"), CapabilityInfo("echo")])
        assert decode_message(serialize_message(message)) == message


class TestMalformedInput:
    """Malformed input never raises out of parse_message."""

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "not json",
            "[1, 2]",
            '{"no": "type"}',
            '{"type": "launch_missiles"}',
            '{"type": "command_result"}',
            '{"type": "command_output", "requestId": "r", "chunk": 5}',
            '{"type": "commands_list", "commands": "echo"}',
            '{"type": "commands_list", "commands": [{"name": "a"}, {"name": "a"}]}',
            '{"type": "ready", "port": "5201"}',
            b"\xff\xfe",
        ],
    )
    def test_parse_returns_unparseable(self, raw):
        result = parse_message(raw)

        assert isinstance(result, Unparseable)
        assert result.reason

    def test_decode_raises_malformed_message(self):
        with pytest.raises(MalformedMessage):
            decode_message('{"type": "command_error", "requestId": "r"}')

    def test_unknown_type_is_named_in_reason(self):
        result = parse_message('{"type": "launch_missiles"}')
        assert "launch_missiles" in result.reason


def test_terminal_messages():
    assert is_terminal(CommandResult(request_id="r"))
    assert is_terminal(CommandError(request_id="r", message="m"))
    assert not is_terminal(CommandOutput(request_id="r", chunk="c"))
    assert not is_terminal(Ready())
