"""Bridge configuration management.

Handles persistent configuration stored in ~/.procbridge/config.yaml.
Supports environment variable overrides and CLI flag precedence.
"""

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .bridge.lifecycle import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_READY_WINDOW,
    DEFAULT_START_TIMEOUT,
    DEFAULT_STOP_GRACE,
)
from .shared.paths import CONFIG_FILE

logger = logging.getLogger(__name__)

# Default values
DEFAULT_TRANSPORT = "sse"
DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_LOG_LEVEL = "info"
DEFAULT_CAPABILITIES = "procbridge.capabilities:default_table"

TRANSPORTS = ("sse", "stdio")

# Overrides the config file location
CONFIG_PATH_ENV = "PROCBRIDGE_CONFIG"


def _transport(value: Any) -> str:
    value = str(value).lower()
    if value not in TRANSPORTS:
        raise ValueError(f"transport must be one of {', '.join(TRANSPORTS)}, got {value!r}")
    return value


def _port(value: Any) -> int:
    port = int(value)
    if not 0 < port < 65536:
        raise ValueError(f"port out of range: {port}")
    return port


def _seconds(value: Any) -> float:
    seconds = float(value)
    if seconds <= 0:
        raise ValueError(f"must be positive, got {seconds}")
    return seconds


# Config key -> parser; also the set of keys accepted by `config set`
PARSERS: dict[str, Callable[[Any], Any]] = {
    "port": _port,
    "host": str,
    "transport": _transport,
    "command_timeout": _seconds,
    "start_timeout": _seconds,
    "ready_window": _seconds,
    "stop_grace": _seconds,
    "log_level": lambda value: str(value).lower(),
    "capabilities": str,
}

# Environment variable mappings
ENV_VARS = {key: f"PROCBRIDGE_{key.upper()}" for key in PARSERS}


@dataclass
class BridgeConfig:
    """Bridge configuration."""

    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    transport: str = DEFAULT_TRANSPORT
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    start_timeout: float = DEFAULT_START_TIMEOUT
    ready_window: float = DEFAULT_READY_WINDOW
    stop_grace: float = DEFAULT_STOP_GRACE
    log_level: str = DEFAULT_LOG_LEVEL
    capabilities: str = DEFAULT_CAPABILITIES

    # Track where each value came from
    _sources: dict[str, str] = field(default_factory=dict)

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self._sources.get(key, "default")

    def to_dict(self) -> dict[str, Any]:
        return {key: getattr(self, key) for key in PARSERS}


def get_config_path() -> Path:
    """Get the config file path.

    Returns:
        $PROCBRIDGE_CONFIG if set, else ~/.procbridge/config.yaml
    """
    override = os.environ.get(CONFIG_PATH_ENV)
    if override:
        return Path(override)
    return CONFIG_FILE


def _read_config_file(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable config file {config_path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {config_path}: expected a mapping")
        return {}
    return data


def load_config() -> BridgeConfig:
    """Load bridge configuration.

    Precedence (highest to lowest):
    1. Environment variables (PROCBRIDGE_*)
    2. Config file (~/.procbridge/config.yaml)
    3. Defaults

    Invalid values are skipped with a warning, keeping the lower-precedence
    value.

    Returns:
        BridgeConfig with values and sources
    """
    config = BridgeConfig()
    sources = {key: "default" for key in PARSERS}

    layers = [
        ("config file", _read_config_file(get_config_path())),
        ("environment", {k: os.environ[v] for k, v in ENV_VARS.items() if os.environ.get(v)}),
    ]
    for source, values in layers:
        for key, parse in PARSERS.items():
            if key not in values:
                continue
            try:
                setattr(config, key, parse(values[key]))
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring invalid {key} from {source}: {e}")
                continue
            sources[key] = source

    config._sources = sources
    return config


def save_config(key: str, value: Any) -> None:
    """Save a config value to the config file.

    Args:
        key: Config key (see PARSERS)
        value: Value to save

    Raises:
        KeyError: If the key is unknown
        ValueError: If the value does not parse
    """
    if key not in PARSERS:
        raise KeyError(key)
    parsed = PARSERS[key](value)

    config_path = get_config_path()
    existing = _read_config_file(config_path)
    existing[key] = parsed

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.dump(existing, f, default_flow_style=False)


def unset_config(key: str) -> bool:
    """Remove a config value from the config file.

    Args:
        key: Config key to remove

    Returns:
        True if key was removed, False if not found
    """
    config_path = get_config_path()
    existing = _read_config_file(config_path)
    if key not in existing:
        return False

    del existing[key]
    with open(config_path, "w") as f:
        yaml.dump(existing, f, default_flow_style=False)
    return True
