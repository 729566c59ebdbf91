"""Correlation table for in-flight command requests.

Entries are inserted when an ExecuteCommand is sent and removed exactly once:
on the terminal message, on timeout, on caller cancellation, or when the
channel is lost. Lookups for ids that are no longer present return None, which
is how late or duplicate terminal messages get dropped.
"""

import asyncio
import itertools
import secrets
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

OutputSink = Callable[[str], Any]


@dataclass
class PendingRequest:
    """One request awaiting its terminal message."""

    request_id: str
    command: str
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    timeout_handle: asyncio.TimerHandle | None = None
    on_output: OutputSink | None = None
    outputs: int = 0

    @property
    def age(self) -> float:
        """Seconds since the request was registered."""
        return time.monotonic() - self.created_at

    def cancel_timeout(self) -> None:
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None


class CorrelationTable:
    """Map of request id to PendingRequest."""

    def __init__(self) -> None:
        self._pending: dict[str, PendingRequest] = {}
        self._counter = itertools.count(1)

    def next_id(self) -> str:
        """Generate a request id unique for the lifetime of this table."""
        return f"{next(self._counter)}-{secrets.token_hex(4)}"

    def register(
        self,
        request_id: str,
        command: str,
        future: asyncio.Future,
        on_output: OutputSink | None = None,
    ) -> PendingRequest:
        """Insert a pending request.

        Raises:
            ValueError: If the id is already pending
        """
        if request_id in self._pending:
            raise ValueError(f"Request id already pending: {request_id}")

        pending = PendingRequest(
            request_id=request_id,
            command=command,
            future=future,
            on_output=on_output,
        )
        self._pending[request_id] = pending
        return pending

    def get(self, request_id: str) -> PendingRequest | None:
        return self._pending.get(request_id)

    def settle(self, request_id: str) -> PendingRequest | None:
        """Remove a pending request and cancel its timeout.

        Returns:
            The removed entry, or None if it was not pending
        """
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.cancel_timeout()
        return pending

    def drain(self) -> list[PendingRequest]:
        """Remove and return every pending request."""
        drained = list(self._pending.values())
        self._pending.clear()
        for pending in drained:
            pending.cancel_timeout()
        return drained

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def __iter__(self) -> Iterator[PendingRequest]:
        return iter(list(self._pending.values()))
