"""Logging setup shared by the host, the command server and the CLI.

Each process calls ``configure_logging`` once. Records go to stderr or to a
log file, never to stdout, which may be carrying the stdio transport.
structlog events and plain stdlib records share one renderer, so a JSON log
file holds one JSON object per line whichever API emitted it.
"""

import logging
import sys
from pathlib import Path

import structlog

LEVELS = ("debug", "info", "warning", "error", "critical")

# Applied to structlog events and, via foreign_pre_chain, to stdlib records
_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]


def _handler(log_file: str | Path | None) -> logging.Handler:
    if log_file:
        return logging.FileHandler(str(log_file), encoding="utf-8")
    return logging.StreamHandler(sys.stderr)


def _formatter(json_output: bool) -> structlog.stdlib.ProcessorFormatter:
    if json_output:
        render: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        render = [structlog.dev.ConsoleRenderer(colors=False)]
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *render],
    )


def configure_logging(
    level: str = "warning",
    log_file: str | Path | None = None,
    json_output: bool = False,
    role: str | None = None,
) -> None:
    """Route stdlib logging and structlog to one handler.

    Args:
        level: One of LEVELS; anything else means warning
        log_file: Write here instead of stderr
        json_output: Render every record as JSON (used for log files)
        role: "host" or "child"; bound into the structlog context so it
            appears on every record
    """
    log_level = getattr(logging, level.upper(), logging.WARNING)
    handler = _handler(log_file)
    handler.setLevel(log_level)
    handler.setFormatter(_formatter(json_output))

    logging.basicConfig(
        level=log_level,
        handlers=[handler],
        format="%(message)s",
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if role:
        structlog.contextvars.bind_contextvars(role=role)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """structlog logger for a module (pass ``__name__``)."""
    return structlog.get_logger(name)
