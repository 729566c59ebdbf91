"""Unit tests for CommandExecutionBridge - host-side execution."""

import asyncio

import pytest

from procbridge.bridge.executor import (
    CapabilityTable,
    CommandExecutionBridge,
    chunk_to_text,
    normalize_arguments,
)
from procbridge.bridge.messages import (
    AbsentArgs,
    CapabilityList,
    CommandError,
    CommandOutput,
    CommandResult,
    DiscoverCapabilities,
    ExecuteCommand,
    ObjectArgs,
    ScalarArgs,
    SequenceArgs,
    is_terminal,
)
from tests.mocks import RecordingChannel

pytestmark = [pytest.mark.bridge, pytest.mark.bridge_unit]


@pytest.fixture
def bridge(capability_table):
    return CommandExecutionBridge(capability_table)


async def run(bridge, command, args=None, request_id="r1"):
    channel = RecordingChannel()
    message = ExecuteCommand(request_id=request_id, command=command, args=args or AbsentArgs())
    await bridge.execute(message, channel)
    return channel


# =============================================================================
# Argument normalization
# =============================================================================


class TestArgumentShapes:
    """Each Argument variant reaches the capability in its own shape."""

    @pytest.mark.parametrize(
        "args, expected",
        [
            (SequenceArgs([1, "two", [3]]), (1, "two", [3])),
            (ObjectArgs({"a": 1}), ({"a": 1},)),
            (AbsentArgs(), ()),
            (ScalarArgs(5), (5,)),
        ],
    )
    @pytest.mark.asyncio
    async def test_record_receives_normalized_parameters(
        self, bridge, capability_table, args, expected
    ):
        channel = await run(bridge, "record", args)

        assert capability_table.calls == [expected]
        assert channel.sent == [CommandResult(request_id="r1", value="recorded")]

    def test_empty_sequence_means_no_parameters(self):
        assert normalize_arguments(SequenceArgs([])) == ()

    def test_non_variant_rejected(self):
        with pytest.raises(TypeError):
            normalize_arguments(["raw", "list"])


# =============================================================================
# Terminal messages
# =============================================================================


class TestTerminalMessages:
    @pytest.mark.asyncio
    async def test_result(self, bridge):
        channel = await run(bridge, "echo", SequenceArgs(["hi"]))
        assert channel.sent == [CommandResult(request_id="r1", value="hi")]

    @pytest.mark.asyncio
    async def test_unknown_command_error_contains_name(self, bridge):
        channel = await run(bridge, "nope", ObjectArgs({}))

        [error] = channel.sent
        assert isinstance(error, CommandError)
        assert error.request_id == "r1"
        assert "nope" in error.message

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_message_without_traceback(self, bridge):
        channel = await run(bridge, "boom")

        [error] = channel.sent
        assert error == CommandError(request_id="r1", message="kaboom")

    @pytest.mark.asyncio
    async def test_exception_without_message_uses_class_name(self):
        table = CapabilityTable()

        def bare():
            raise KeyError()

        table.register("bare", bare)
        channel = await run(CommandExecutionBridge(table), "bare")

        assert channel.sent[0].message == "KeyError"

    @pytest.mark.asyncio
    async def test_unserializable_result_becomes_error(self, bridge):
        channel = await run(bridge, "unserializable")

        [error] = channel.sent
        assert isinstance(error, CommandError)
        assert "not JSON-serializable" in error.message

    @pytest.mark.asyncio
    async def test_bad_arity_becomes_error(self, bridge):
        channel = await run(bridge, "boom", SequenceArgs([1, 2, 3]))

        [error] = channel.sent
        assert isinstance(error, CommandError)

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        table = CapabilityTable()
        table.register("sync", lambda x: x * 2)

        async def double(x):
            return x * 2

        table.register("async", double)
        bridge = CommandExecutionBridge(table)

        assert (await run(bridge, "sync", ScalarArgs(2))).sent[0].value == 4
        assert (await run(bridge, "async", ScalarArgs(3))).sent[0].value == 6


# =============================================================================
# Streaming
# =============================================================================


class TestStreaming:
    @pytest.mark.asyncio
    async def test_outputs_then_exactly_one_terminal(self, bridge):
        channel = await run(bridge, "stream", SequenceArgs([3]))

        assert channel.sent == [
            CommandOutput(request_id="r1", chunk="chunk 0"),
            CommandOutput(request_id="r1", chunk="chunk 1"),
            CommandOutput(request_id="r1", chunk="chunk 2"),
            CommandResult(request_id="r1", value="done"),
        ]
        assert sum(1 for message in channel.sent if is_terminal(message)) == 1

    @pytest.mark.asyncio
    async def test_emit_after_completion_is_dropped(self):
        table = CapabilityTable()
        emitters = []

        def leak(*, emit):
            emitters.append(emit)
            return "ok"

        table.register("leak", leak, streaming=True)
        channel = await run(CommandExecutionBridge(table), "leak")
        emitters[0]("too late")

        assert channel.sent == [CommandResult(request_id="r1", value="ok")]

    def test_chunk_to_text(self):
        assert chunk_to_text("plain") == "plain"
        assert chunk_to_text({"a": 1}) == '{"a": 1}'
        assert chunk_to_text(object()).startswith("<object")

    @pytest.mark.asyncio
    async def test_closed_channel_does_not_raise(self, bridge):
        channel = RecordingChannel()
        await channel.close()

        await bridge.execute(
            ExecuteCommand(request_id="r1", command="stream", args=SequenceArgs([2])), channel
        )

        assert channel.sent == []


# =============================================================================
# Message dispatch
# =============================================================================


class TestHandleMessage:
    @pytest.mark.asyncio
    async def test_discovery_answered_with_table(self, bridge, capability_table):
        channel = RecordingChannel()

        await bridge.handle_message(DiscoverCapabilities(), channel)

        assert channel.sent == [CapabilityList(capabilities=capability_table.describe())]

    @pytest.mark.asyncio
    async def test_executions_run_concurrently(self, bridge):
        channel = RecordingChannel()

        await bridge.handle_message(
            ExecuteCommand(request_id="slow", command="slow", args=SequenceArgs([0.2])), channel
        )
        await bridge.handle_message(
            ExecuteCommand(request_id="fast", command="echo", args=SequenceArgs([1])), channel
        )
        await asyncio.sleep(0.05)

        assert [m.request_id for m in channel.sent] == ["fast"]
        assert bridge.in_flight_count == 1

        await asyncio.sleep(0.3)
        assert [m.request_id for m in channel.sent] == ["fast", "slow"]
        assert bridge.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_close_cancels_running_executions(self, bridge):
        channel = RecordingChannel()
        await bridge.handle_message(
            ExecuteCommand(request_id="slow", command="slow", args=SequenceArgs([5])), channel
        )
        await asyncio.sleep(0)

        await bridge.close()

        assert bridge.in_flight_count == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_unexpected_message_ignored(self, bridge):
        channel = RecordingChannel()
        await bridge.handle_message(CommandOutput(request_id="x", chunk="?"), channel)
        assert channel.sent == []


class TestCapabilityTable:
    def test_decorator_uses_docstring_first_line(self):
        table = CapabilityTable()

        @table.capability()
        def greet(name):
            """Say hello.

            Longer text.
            """
            return f"hello {name}"

        assert [info.description for info in table.describe()] == ["Say hello."]
        assert "greet" in table
        assert len(table) == 1

    def test_register_replaces(self):
        table = CapabilityTable()
        table.register("x", lambda: 1)
        table.register("x", lambda: 2, description="second")

        assert len(table) == 1
        assert table.get("x").description == "second"
