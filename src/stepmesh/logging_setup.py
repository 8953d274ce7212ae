"""Logging configuration for stepmesh.

Provides consistent structured logging setup for the CLI, the MCP server
and library users that want the same output, plus helpers that attach a
pipeline error's context (entity id, face index, byte offset) to log
events.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict, List, TextIO

import structlog

from kernel.errors import StepMeshError


def configure_logging(
    level: str = "INFO",
    enable_colors: bool = True,
    enable_json: bool = False,
    extra_processors: List[Any] | None = None,
    stream: TextIO | None = None,
) -> None:
    """Configure structured logging for stepmesh.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        enable_colors: Enable colored output for console
        enable_json: Use JSON output format
        extra_processors: Additional structlog processors
        stream: Output stream; the MCP server passes stderr because stdout
            carries the protocol
    """
    stream = stream or sys.stderr
    log_level = LOG_LEVELS[level.upper()]

    logging.basicConfig(format="%(message)s", stream=stream, level=log_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
    ]

    if extra_processors:
        processors.extend(extra_processors)

    if enable_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(colors=enable_colors and stream.isatty())
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.WriteLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )


def configure_for(entry_point: str, verbose: bool = False, json_logs: bool = False) -> None:
    """Apply the ``CONFIGS`` entry for ``entry_point`` (``cli`` or ``mcp``).

    Args:
        entry_point: Key into ``CONFIGS``
        verbose: Force DEBUG level
        json_logs: Force JSON lines output

    Raises:
        KeyError: If ``entry_point`` has no configuration
    """
    config = dict(CONFIGS[entry_point])
    if verbose:
        config["level"] = "DEBUG"
    if json_logs:
        config["enable_json"] = True
        config["enable_colors"] = False
    configure_logging(stream=sys.stderr, **config)


def error_context(error: BaseException) -> Dict[str, Any]:
    """Fields describing ``error`` for a structured log event.

    Pipeline errors contribute their entity id, face index and byte offset
    when set.
    """
    fields: Dict[str, Any] = {"error": str(error), "error_type": type(error).__name__}
    if isinstance(error, StepMeshError):
        fields.update(error.context())
    return fields


LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Default configuration per entry point
CONFIGS = {
    "cli": {
        "level": "WARNING",
        "enable_colors": True,
        "enable_json": False,
    },
    "mcp": {
        "level": "INFO",
        "enable_colors": False,
        "enable_json": False,
    },
}
