"""Path management for procbridge.

Manages the ~/.procbridge/ directory.
"""

from pathlib import Path

# Base directory for all procbridge data
PROCBRIDGE_DIR = Path.home() / ".procbridge"

# Default config file location
CONFIG_FILE = PROCBRIDGE_DIR / "config.yaml"

# Log directory (same as base for simplicity)
LOG_DIR = PROCBRIDGE_DIR


def ensure_dirs() -> None:
    """Create ~/.procbridge/ (mode 0o700) if missing."""
    PROCBRIDGE_DIR.mkdir(mode=0o700, exist_ok=True)


def get_log_file(name: str = "host") -> Path:
    """Get path to a log file.

    Args:
        name: Log file name (without extension)

    Returns:
        Path to the log file
    """
    return LOG_DIR / f"{name}.log"
