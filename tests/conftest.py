"""Shared test fixtures for procbridge tests.

- channel_pair: two MessageChannels over a real socketpair
- bridge_pair: a CommandClient wired to a CommandExecutionBridge
- capability_table: a small table with recording, streaming and failing
  capabilities
"""

import asyncio
import socket
from typing import Any

import pytest

from procbridge.bridge.channel import MessageChannel
from procbridge.bridge.client import CommandClient
from procbridge.bridge.executor import CapabilityTable, CommandExecutionBridge


@pytest.fixture
def capability_table() -> CapabilityTable:
    """Capabilities used across bridge tests.

    ``record`` stores the positional parameters it was called with in
    ``table.calls``.
    """
    table = CapabilityTable()
    table.calls = []

    @table.capability()
    def echo(value: Any = None) -> Any:
        """Return the value unchanged."""
        return value

    @table.capability()
    def record(*params: Any) -> str:
        """Record the parameters."""
        table.calls.append(params)
        return "recorded"

    @table.capability(streaming=True)
    async def stream(count: int, *, emit) -> str:
        """Emit numbered chunks."""
        for i in range(count):
            emit(f"chunk {i}")
        return "done"

    @table.capability()
    async def slow(seconds: float) -> str:
        """Sleep, then answer."""
        await asyncio.sleep(seconds)
        return "late"

    @table.capability()
    def boom() -> None:
        """Always fails."""
        raise RuntimeError("kaboom")

    @table.capability()
    def unserializable() -> object:
        """Returns something JSON cannot encode."""
        return object()

    return table


@pytest.fixture
async def channel_pair():
    """Host end and child end of a connected channel."""
    host_sock, child_sock = socket.socketpair()
    host = await MessageChannel.from_socket(host_sock, name="host end")
    child = await MessageChannel.from_socket(child_sock, name="child end")
    yield host, child
    await host.close()
    await child.close()


@pytest.fixture
async def bridge_pair(channel_pair, capability_table):
    """CommandClient talking to a CommandExecutionBridge over a socketpair."""
    host_channel, child_channel = channel_pair
    bridge = CommandExecutionBridge(capability_table)
    client = CommandClient(child_channel, timeout=5.0, discovery_timeout=2.0)

    async def serve_host() -> None:
        async for message in host_channel:
            await bridge.handle_message(message, host_channel)

    tasks = [asyncio.create_task(serve_host()), asyncio.create_task(client.run())]
    yield client, bridge

    await bridge.close()
    await client.close()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
