"""Process runtimes of the bridge.

- host: owns the capability table and supervises the command server
- child: the command server, exposing host capabilities as MCP tools
"""

from .child import ChildSettings, CommandServer, run_child
from .health_server import HealthStatus, health_handler
from .host import HostRuntime, child_command, run_host

__all__ = [
    # Host
    "HostRuntime",
    "child_command",
    "run_host",
    # Child
    "ChildSettings",
    "CommandServer",
    "run_child",
    # Health
    "HealthStatus",
    "health_handler",
]
