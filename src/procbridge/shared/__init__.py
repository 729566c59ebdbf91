"""Shared modules for procbridge.

Used by both processes of the bridge and by the CLI:
- Host (capability owner, supervises the child)
- Child (command server)
- CLI (remote tool client, config)
"""

from .logging import configure_logging, get_logger
from .paths import CONFIG_FILE, LOG_DIR, PROCBRIDGE_DIR, ensure_dirs, get_log_file

__all__ = [
    # Paths
    "PROCBRIDGE_DIR",
    "CONFIG_FILE",
    "LOG_DIR",
    "ensure_dirs",
    "get_log_file",
    # Logging
    "configure_logging",
    "get_logger",
]
