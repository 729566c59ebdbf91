"""Built-in capability table and loading of user tables.

A capability table is referenced as ``module:attr`` where ``attr`` is either
a CapabilityTable or a zero-argument callable returning one.
"""

import asyncio
import importlib
from collections.abc import Callable
from typing import Any

from .bridge.executor import CapabilityTable


def build_default_table() -> CapabilityTable:
    """Capabilities served when no other table is configured."""
    table = CapabilityTable()

    @table.capability()
    def echo(*values: Any) -> Any:
        """Return the arguments unchanged."""
        if len(values) == 1:
            return values[0]
        return list(values)

    @table.capability()
    def add(*numbers: Any) -> float | int:
        """Add numbers together."""
        if len(numbers) == 1 and isinstance(numbers[0], list):
            numbers = tuple(numbers[0])
        for number in numbers:
            if isinstance(number, bool) or not isinstance(number, (int, float)):
                raise TypeError(f"add expects numbers, got {number!r}")
        return sum(numbers)

    @table.capability()
    async def sleep(seconds: float = 1.0) -> float:
        """Wait for a number of seconds, then return it."""
        await asyncio.sleep(float(seconds))
        return seconds

    @table.capability(streaming=True)
    async def countdown(start: int = 3, delay: float = 0.1, *, emit: Callable[[Any], None]) -> str:
        """Stream a countdown, one line per step."""
        for step in range(int(start), 0, -1):
            emit(str(step))
            await asyncio.sleep(float(delay))
        return "liftoff"

    @table.capability()
    def fail(message: str = "Requested failure") -> None:
        """Raise an error with the given message."""
        raise RuntimeError(message)

    return table


default_table = build_default_table()


def load_capability_table(reference: str) -> CapabilityTable:
    """Import a capability table from a ``module:attr`` reference.

    Args:
        reference: e.g. "procbridge.capabilities:default_table"

    Returns:
        The referenced table (factories are called once)

    Raises:
        ValueError: If the reference is malformed or does not resolve to a table
    """
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Capability table must be given as module:attr, got {reference!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import capability module '{module_name}': {e}") from e

    try:
        target = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module '{module_name}' has no attribute '{attr}'") from None

    if not isinstance(target, CapabilityTable) and callable(target):
        target = target()
    if not isinstance(target, CapabilityTable):
        raise ValueError(f"{reference} is not a CapabilityTable (got {type(target).__name__})")
    return target
