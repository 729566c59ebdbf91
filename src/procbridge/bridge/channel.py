"""MessageChannel - newline-delimited message stream between host and child.

Wraps an asyncio stream pair (normally one end of a socketpair inherited by
the child) and speaks the Message union from ``messages.py``. Writes go
through a single StreamWriter so messages leave in send order.
"""

import asyncio
import logging
import socket
from collections.abc import AsyncIterator

from .errors import TransportUnavailable
from .messages import Message, Unparseable, parse_message, serialize_message

logger = logging.getLogger(__name__)

# Upper bound for one serialized message; command results can be large
MAX_MESSAGE_BYTES = 16 * 1024 * 1024


class MessageChannel:
    """Duplex channel carrying serialized messages, one per line."""

    def __init__(
        self,
        reader: asyncio.StreamReader | None,
        writer: asyncio.StreamWriter | None,
        name: str = "channel",
    ):
        """Initialize MessageChannel.

        Args:
            reader: Stream to read messages from (None for send-only)
            writer: Stream to write messages to (None for receive-only)
            name: Label used in log lines
        """
        self.name = name
        self._reader = reader
        self._writer = writer
        self._closed = False

    @classmethod
    async def from_socket(cls, sock: socket.socket, name: str = "channel") -> "MessageChannel":
        """Open a channel over a connected socket."""
        sock.setblocking(False)
        reader, writer = await asyncio.open_connection(sock=sock, limit=MAX_MESSAGE_BYTES)
        return cls(reader, writer, name=name)

    @classmethod
    async def from_fd(cls, fd: int, name: str = "channel") -> "MessageChannel":
        """Open a channel over an inherited socket file descriptor."""
        return await cls.from_socket(socket.socket(fileno=fd), name=name)

    @property
    def is_writable(self) -> bool:
        """Whether a send can currently be attempted."""
        if self._closed or self._writer is None:
            return False
        return not self._writer.is_closing()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def send_nowait(self, message: Message) -> None:
        """Queue a message on the writer without waiting for the drain.

        Raises:
            TransportUnavailable: If the channel cannot be written
            TypeError, ValueError: If the message carries a non-JSON value
        """
        if not self.is_writable:
            raise TransportUnavailable(message=f"Cannot send on {self.name}: channel is closed")

        line = serialize_message(message)
        self._writer.write(line.encode("utf-8") + b"\n")

    async def drain(self) -> None:
        """Wait until buffered writes are flushed to the peer."""
        if self._writer is None:
            return
        try:
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            raise TransportUnavailable(message=f"Lost {self.name}: {e}") from e

    async def send(self, message: Message) -> None:
        """Send a message and wait for it to be flushed."""
        self.send_nowait(message)
        await self.drain()

    async def receive(self) -> Message | None:
        """Read the next well-formed message.

        Malformed lines are logged and skipped.

        Returns:
            The next message, or None at end of stream
        """
        if self._reader is None:
            return None

        while True:
            try:
                line = await self._reader.readline()
            except ValueError as e:
                logger.warning(f"Dropping oversized message on {self.name}: {e}")
                continue
            except (ConnectionError, OSError) as e:
                logger.info(f"{self.name} read failed: {e}")
                return None

            if not line:
                return None

            line = line.strip()
            if not line:
                continue

            parsed = parse_message(line)
            if isinstance(parsed, Unparseable):
                logger.warning(f"Dropping malformed message on {self.name}: {parsed.reason}")
                continue
            return parsed

    async def __aiter__(self) -> AsyncIterator[Message]:
        while True:
            message = await self.receive()
            if message is None:
                return
            yield message

    async def close(self) -> None:
        """Close the channel; safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error while closing {self.name}: {e}")
